from __future__ import annotations

import os
import posixpath
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from pget.remote import RemoteFetchError, RemoteListError, discard_partial

_PROPERTIES_ENCODING = "utf-8"
_DEFAULT_PROPERTIES = "s3.properties"
_S3_SCHEME = "s3://"


@dataclass
class S3Config:
    """S3 connection settings."""

    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    session_token: Optional[str] = None
    region: Optional[str] = None
    endpoint_url: Optional[str] = None


def _parse_properties(path: str) -> Dict[str, str]:
    props: Dict[str, str] = {}
    with open(path, "r", encoding=_PROPERTIES_ENCODING) as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, value = line.split("=", 1)
            props[key.strip()] = value.strip()
    return props


def load_s3_config(path: Optional[str] = None) -> S3Config:
    """
    Load S3Config from a .properties file.

    Resolution order:
    1. Explicit path argument, if provided.
    2. S3_PROPERTIES env var.
    3. 's3.properties' in the current working directory.

    A missing file is an error only when it was named explicitly; otherwise
    an empty config is returned and boto3 resolves credentials on its own.
    """
    explicit = path is not None or "S3_PROPERTIES" in os.environ
    if path is None:
        path = os.environ.get("S3_PROPERTIES", _DEFAULT_PROPERTIES)
    if not os.path.exists(path):
        if explicit:
            raise FileNotFoundError(f"S3 properties file not found: {path}")
        return S3Config()

    props = _parse_properties(path)

    return S3Config(
        access_key=props.get("s3.accessKey") or props.get("accessKey"),
        secret_key=props.get("s3.secretKey") or props.get("secretKey"),
        session_token=props.get("s3.sessionToken"),
        region=props.get("s3.region"),
        endpoint_url=props.get("s3.endpoint"),
    )


def create_s3_client(cfg: S3Config, region: Optional[str] = None, max_pool_connections: int = 16):
    """
    Create a boto3 S3 client from S3Config.

    If access_key / secret_key are not provided in the config, standard
    AWS credential resolution is used (env vars, shared credentials file, etc.).
    An explicit region overrides the one from the config.
    """
    boto_config = BotoConfig(
        signature_version="s3v4",
        max_pool_connections=max_pool_connections,
    )

    session_kwargs = {}
    client_kwargs = {}

    region = region or cfg.region
    if region:
        client_kwargs["region_name"] = region
    if cfg.endpoint_url:
        client_kwargs["endpoint_url"] = cfg.endpoint_url

    if cfg.access_key and cfg.secret_key:
        session_kwargs["aws_access_key_id"] = cfg.access_key
        session_kwargs["aws_secret_access_key"] = cfg.secret_key

    if cfg.session_token:
        session_kwargs["aws_session_token"] = cfg.session_token

    session = boto3.Session(**session_kwargs)
    return session.client(
        "s3",
        config=boto_config,
        **client_kwargs,
    )


def is_s3_uri(path: str) -> bool:
    return path.startswith(_S3_SCHEME)


def parse_s3_uri(uri: str) -> Tuple[str, str]:
    """Split ``s3://bucket/key`` into ``(bucket, key)``; key may be empty."""
    if not is_s3_uri(uri):
        raise ValueError(f"Not an s3:// URI: {uri}")
    bucket, _, key = uri[len(_S3_SCHEME):].partition("/")
    if not bucket:
        raise ValueError(f"Missing bucket in URI: {uri}")
    return bucket, key


class S3DirectoryClient:
    """
    Lists and fetches the objects directly under an S3 prefix.

    ``s3://bucket/data/part`` is read as the directory ``data/part/``. Keys
    come back in the order S3 lists them (lexicographic by UTF-8 bytes);
    nested prefixes and directory-marker objects are skipped.
    """

    def __init__(self, s3_client) -> None:
        self._client = s3_client

    def list(self, remote_path: str) -> List[str]:
        try:
            bucket, prefix = parse_s3_uri(remote_path)
        except ValueError as exc:
            raise RemoteListError(str(exc)) from exc
        if prefix and not prefix.endswith("/"):
            prefix += "/"

        keys: List[str] = []
        request = {"Bucket": bucket, "Prefix": prefix, "Delimiter": "/"}
        try:
            while True:
                page = self._client.list_objects_v2(**request)
                for obj in page.get("Contents", []):
                    key = obj["Key"]
                    if key.endswith("/"):
                        continue
                    keys.append(key)
                if not page.get("IsTruncated"):
                    break
                request["ContinuationToken"] = page["NextContinuationToken"]
        except (BotoCoreError, ClientError) as exc:
            raise RemoteListError(f"Failed to list {remote_path}: {exc}") from exc

        return [f"{_S3_SCHEME}{bucket}/{key}" for key in keys]

    def fetch(self, remote_id: str, local_dir: str) -> str:
        try:
            bucket, key = parse_s3_uri(remote_id)
        except ValueError as exc:
            raise RemoteFetchError(str(exc)) from exc
        if not key or key.endswith("/"):
            raise RemoteFetchError(f"Not an object key: {remote_id}")

        dest_path = os.path.join(local_dir, posixpath.basename(key))
        tmp_path = f"{dest_path}.download"
        try:
            self._client.download_file(bucket, key, tmp_path)
            os.replace(tmp_path, dest_path)
        except (BotoCoreError, ClientError, OSError) as exc:
            raise RemoteFetchError(f"Failed to download {remote_id} -> {dest_path}: {exc}") from exc
        finally:
            discard_partial(tmp_path)
        return dest_path
