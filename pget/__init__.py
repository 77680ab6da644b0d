"""Parallel fetch of a remote directory, with optional ordered merge into one file."""

from pget.engine import (
    DEFAULT_WORKERS,
    FetchDispatcher,
    FetchResult,
    OrderedMerge,
    RunSummary,
    ScratchArea,
    WorkChunk,
    fetch_to_directory,
    merge_into_file,
    parallel_get,
    partition,
)
from pget.errors import (
    CleanupError,
    FetchError,
    ListError,
    MergeWriteError,
    OutputPreconditionError,
    PgetError,
)
from pget.remote import (
    LocalDirectoryClient,
    RemoteDirectoryClient,
    RemoteError,
    RemoteFetchError,
    RemoteListError,
)

__version__ = "0.1.0"
