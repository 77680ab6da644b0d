"""
Concurrent fetch-and-merge engine.

A remote listing is split into contiguous chunks, one per worker thread. In
plain mode every worker fetches straight into the output directory. In merge
mode workers fetch into a run-owned scratch directory and the coordinating
thread appends the fetched files to a single output in listing order,
whatever order the workers finish in.
"""

from __future__ import annotations

import logging
import os
import queue
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from tqdm import tqdm

from pget.errors import (
    CleanupError,
    FetchError,
    ListError,
    MergeWriteError,
    OutputPreconditionError,
)
from pget.remote import RemoteDirectoryClient, RemoteListError, discard_partial

log = logging.getLogger(__name__)

DEFAULT_WORKERS = 10
_SCRATCH_PREFIX = "pget-"
_COPY_BUFFER_SIZE = 4 * 1024 * 1024


def _new_file_mode() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


@dataclass(frozen=True)
class WorkChunk:
    """Contiguous run of entries; start is the listing index of the first one."""

    start: int
    entries: Tuple[str, ...]


@dataclass(frozen=True)
class FetchResult:
    index: int
    path: str


@dataclass
class RunSummary:
    mode: str
    files: int
    output: str
    bytes_written: Optional[int] = None


def partition(entries: Sequence[str], workers: int) -> List[WorkChunk]:
    """
    Split entries into at most ``workers`` contiguous, non-empty chunks.

    Chunks hold ``ceil(len(entries) / workers)`` entries each, except the
    last one which may be shorter. Concatenating the chunks in order gives
    back the input.
    """
    if workers < 1:
        raise ValueError("workers must be >= 1")
    if not entries:
        return []
    size = -(-len(entries) // workers)
    return [
        WorkChunk(start=start, entries=tuple(entries[start:start + size]))
        for start in range(0, len(entries), size)
    ]


class _WorkerFailed:
    def __init__(self, error: FetchError) -> None:
        self.error = error


_WORKER_DONE = object()


class FetchDispatcher:
    """
    Runs one worker thread per chunk, up to ``workers`` threads.

    Results are handed to the coordinating thread through a single queue.
    The first failure stops every worker from claiming another entry; fetches
    already in flight are allowed to finish before the failure propagates.
    """

    def __init__(
        self,
        client: RemoteDirectoryClient,
        workers: int = DEFAULT_WORKERS,
        *,
        progress: bool = True,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.client = client
        self.workers = workers
        self.progress = progress

    def dispatch(
        self,
        chunks: Sequence[WorkChunk],
        destination: Callable[[int], str],
    ) -> Iterator[FetchResult]:
        """
        Fetch every entry of ``chunks`` and yield results in completion order.

        ``destination`` maps a listing index to the local directory the entry
        is fetched into. Raises FetchError for the first failed entry. Closing
        the generator early stops the workers and waits for them.
        """
        if len(chunks) > self.workers:
            raise ValueError(f"Got {len(chunks)} chunks for {self.workers} workers")
        total = sum(len(chunk.entries) for chunk in chunks)
        if total == 0:
            return

        results: "queue.Queue[object]" = queue.Queue()
        stop = threading.Event()

        def _fetch_chunk(chunk: WorkChunk) -> None:
            try:
                for offset, entry in enumerate(chunk.entries):
                    if stop.is_set():
                        return
                    index = chunk.start + offset
                    try:
                        path = self.client.fetch(entry, destination(index))
                    except Exception as exc:
                        stop.set()
                        error = FetchError(
                            f"Failed to fetch file {index + 1}/{total} ({entry}): {exc}",
                            entry=entry,
                            index=index,
                        )
                        error.__cause__ = exc
                        results.put(_WorkerFailed(error))
                        return
                    results.put(FetchResult(index=index, path=path))
            finally:
                results.put(_WORKER_DONE)

        log.debug("Dispatching %d files across %d workers", total, len(chunks))
        received = 0
        finished = 0
        progress = tqdm(total=total, unit="file", desc="fetch", disable=not self.progress)
        try:
            with ThreadPoolExecutor(max_workers=len(chunks), thread_name_prefix="pget") as pool:
                try:
                    for chunk in chunks:
                        pool.submit(_fetch_chunk, chunk)
                    while finished < len(chunks):
                        item = results.get()
                        if item is _WORKER_DONE:
                            finished += 1
                            continue
                        if isinstance(item, _WorkerFailed):
                            raise item.error
                        received += 1
                        progress.update(1)
                        yield item
                finally:
                    stop.set()
        finally:
            progress.close()

        if received != total:
            raise FetchError(f"Workers exited after fetching {received}/{total} files")


class ScratchArea:
    """
    Temporary directory owned by one merge run.

    Every entry gets its own subdirectory so entries sharing a base name never
    collide. The whole tree is removed when the context exits; a removal
    failure is logged and does not fail the run.
    """

    def __init__(self, dir: Optional[str] = None) -> None:
        try:
            self.path = tempfile.mkdtemp(prefix=_SCRATCH_PREFIX, dir=dir)
        except OSError as exc:
            raise MergeWriteError(f"Failed to create scratch directory: {exc}") from exc
        self._removed = False
        log.info("Scratch directory: %s", self.path)

    def path_for(self, index: int) -> str:
        path = os.path.join(self.path, f"{index:06d}")
        os.makedirs(path, exist_ok=True)
        return path

    def remove(self) -> None:
        if self._removed:
            return
        self._removed = True
        try:
            shutil.rmtree(self.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise CleanupError(f"Failed to remove scratch directory {self.path}: {exc}") from exc

    def __enter__(self) -> "ScratchArea":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self.remove()
        except CleanupError as cleanup_exc:
            log.warning("%s", cleanup_exc)


class OrderedMerge:
    """
    Concatenates fetched files into one output in listing order.

    Results may arrive in any order. Out-of-order ones are held back and the
    contiguous run starting at the next expected index is appended as soon as
    it is available; each appended file is deleted right away.

    The output is assembled under a hidden staging name in the same directory
    and renamed into place only when all ``total`` files were appended. Any
    failure removes the staging file, so the output path either holds the
    complete result or nothing.
    """

    def __init__(self, output_path: str, total: int) -> None:
        self.output_path = output_path
        self.total = total
        self.bytes_written = 0
        self._next_index = 0
        self._pending: Dict[int, str] = {}
        self._out = None
        self._staging_path: Optional[str] = None

    def __enter__(self) -> "OrderedMerge":
        parent = os.path.dirname(os.path.abspath(self.output_path))
        name = os.path.basename(self.output_path)
        try:
            self._out = tempfile.NamedTemporaryFile(
                mode="wb",
                dir=parent,
                prefix=f".{name}.",
                suffix=".part",
                delete=False,
            )
        except OSError as exc:
            raise MergeWriteError(f"Failed to create staging file for {self.output_path}: {exc}") from exc
        self._staging_path = self._out.name
        return self

    @property
    def merged(self) -> int:
        return self._next_index

    def add(self, result: FetchResult) -> None:
        if not 0 <= result.index < self.total:
            raise ValueError(f"Result index {result.index} out of range for {self.total} files")
        if result.index < self._next_index or result.index in self._pending:
            raise ValueError(f"Duplicate result for index {result.index}")

        self._pending[result.index] = result.path
        while self._next_index in self._pending:
            self._append(self._pending.pop(self._next_index))
            self._next_index += 1

    def _append(self, path: str) -> None:
        try:
            with open(path, "rb") as src:
                shutil.copyfileobj(src, self._out, length=_COPY_BUFFER_SIZE)
            os.remove(path)
        except OSError as exc:
            raise MergeWriteError(f"Failed to append {path} to {self.output_path}: {exc}") from exc
        self.bytes_written = self._out.tell()

    def _commit(self) -> None:
        try:
            if self._next_index != self.total:
                raise MergeWriteError(
                    f"Only {self._next_index}/{self.total} files were merged into {self.output_path}"
                )
            try:
                self._out.flush()
                os.fsync(self._out.fileno())
                self._out.close()
                os.chmod(self._staging_path, _new_file_mode())
                self._publish()
            except FileExistsError as exc:
                raise MergeWriteError(f"Target file {self.output_path} appeared during the run") from exc
            except OSError as exc:
                raise MergeWriteError(f"Failed to write {self.output_path}: {exc}") from exc
        except MergeWriteError:
            self._discard()
            raise

    def _publish(self) -> None:
        # Hard link never clobbers an existing output; replace only where
        # the filesystem has no hard links, after re-checking the target.
        try:
            os.link(self._staging_path, self.output_path)
        except FileExistsError:
            raise
        except OSError:
            if os.path.lexists(self.output_path):
                raise FileExistsError(self.output_path)
            os.replace(self._staging_path, self.output_path)
        else:
            discard_partial(self._staging_path)

    def _discard(self) -> None:
        if self._out is not None and not self._out.closed:
            try:
                self._out.close()
            except OSError:
                pass
        if self._staging_path is not None:
            discard_partial(self._staging_path)

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self._commit()
        else:
            self._discard()


def merge_into_file(
    dispatcher: FetchDispatcher,
    chunks: Sequence[WorkChunk],
    output_path: str,
    total: int,
) -> int:
    """Fetch through a scratch directory and merge into output_path. Returns bytes written."""
    with ScratchArea() as scratch:
        with OrderedMerge(output_path, total) as merge:
            with closing(dispatcher.dispatch(chunks, scratch.path_for)) as results:
                for result in results:
                    merge.add(result)
    return merge.bytes_written


def fetch_to_directory(
    dispatcher: FetchDispatcher,
    chunks: Sequence[WorkChunk],
    output_dir: str,
) -> int:
    """Fetch every entry straight into output_dir and wait for all of them."""
    fetched = 0
    for _ in dispatcher.dispatch(chunks, lambda _index: output_dir):
        fetched += 1
    return fetched


def check_output(output: str, merge: bool) -> None:
    if merge:
        if os.path.lexists(output):
            raise OutputPreconditionError(f"Target file {output} already exists")
        parent = os.path.dirname(os.path.abspath(output))
        if not os.path.isdir(parent):
            raise OutputPreconditionError(f"Parent directory of {output} does not exist")
        return

    if not os.path.exists(output):
        raise OutputPreconditionError(f"Output directory {output} does not exist")
    if not os.path.isdir(output):
        raise OutputPreconditionError(f"Output path is not a directory: {output}")


def parallel_get(
    client: RemoteDirectoryClient,
    remote_path: str,
    output: str,
    *,
    workers: int = DEFAULT_WORKERS,
    merge: bool = False,
    progress: bool = True,
) -> RunSummary:
    """
    Fetch every file under remote_path.

    Plain mode fetches into the existing directory ``output``. Merge mode
    concatenates the files, in listing order, into the new file ``output``.
    The output is validated before the remote directory is listed, so an
    invalid target never triggers a fetch.
    """
    if workers < 1:
        raise ValueError("workers must be >= 1")
    check_output(output, merge)

    try:
        entries = tuple(client.list(remote_path))
    except RemoteListError as exc:
        raise ListError(f"Failed to list {remote_path}: {exc}") from exc
    log.info("Found %d files under %s", len(entries), remote_path)

    chunks = partition(entries, workers)
    dispatcher = FetchDispatcher(client, workers, progress=progress)

    if merge:
        bytes_written = merge_into_file(dispatcher, chunks, output, len(entries))
        return RunSummary(mode="merge", files=len(entries), output=output, bytes_written=bytes_written)

    fetched = fetch_to_directory(dispatcher, chunks, output)
    return RunSummary(mode="plain", files=fetched, output=output)
