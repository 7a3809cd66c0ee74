"""Object store access for the archived provider payloads."""

from __future__ import annotations

import os
from pathlib import Path, PurePosixPath
from typing import BinaryIO, List, Optional, Protocol, Tuple

from book_aggregator import logging_manager as log_mgr
from book_aggregator.catalog.errors import TransientIOError

logger = log_mgr.get_logger().getChild("migration.object_store")


class ObjectStore(Protocol):
    """Minimal listing/reading/moving surface the migration needs."""

    def list_page(
        self, prefix: str, token: Optional[str], page_size: int
    ) -> Tuple[List[str], Optional[str]]:
        """Return one page of keys under ``prefix`` and the token for the next page."""

    def open(self, key: str) -> BinaryIO:
        ...

    def move(self, src: str, dst: str) -> None:
        ...


def _validate_key(key: str) -> PurePosixPath:
    path = PurePosixPath(key)
    if not key or path.is_absolute() or ".." in path.parts:
        raise ValueError(f"invalid object key: {key!r}")
    return path


class FilesystemObjectStore:
    """Object store backed by a local directory; keys are POSIX relative paths.

    Listing is lexicographic and the continuation token is the last key of
    the previous page, so pages are stable while files are being moved into
    the processed folder.
    """

    def __init__(self, root: os.PathLike[str] | str) -> None:
        self._root = Path(root).expanduser().resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        return self._root.joinpath(*_validate_key(key).parts)

    def list_page(
        self, prefix: str, token: Optional[str], page_size: int
    ) -> Tuple[List[str], Optional[str]]:
        if page_size <= 0:
            raise ValueError("page_size must be greater than zero")
        try:
            keys = sorted(
                path.relative_to(self._root).as_posix()
                for path in self._root.rglob("*")
                if path.is_file()
            )
        except OSError as exc:
            raise TransientIOError(f"listing {prefix!r} failed: {exc}") from exc

        matching = [key for key in keys if key.startswith(prefix) and (token is None or key > token)]
        page = matching[:page_size]
        next_token = page[-1] if len(matching) > page_size else None
        return page, next_token

    def open(self, key: str) -> BinaryIO:
        try:
            return self._path(key).open("rb")
        except OSError as exc:
            raise TransientIOError(f"reading {key} failed: {exc}") from exc

    def move(self, src: str, dst: str) -> None:
        source = self._path(src)
        target = self._path(dst)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(source, target)
        except OSError as exc:
            raise TransientIOError(f"moving {src} to {dst} failed: {exc}") from exc
        logger.debug(
            "Moved %s to %s",
            src,
            dst,
            extra={"event": "migration.object_moved", "object_key": src, "console_suppress": True},
        )


__all__ = ["FilesystemObjectStore", "ObjectStore"]
