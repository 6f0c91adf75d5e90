"""Model file discovery and shard grouping."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
import os
from pathlib import Path
import re

from loguru import logger

from ..const import MODEL_FILE_SUFFIX
from ..hub.errors import CatalogEmptyError, CatalogError, InvalidIndexError
from ..utils.globs import matches_any

SHARD_PATTERN = re.compile(r"^(.+)-(\d{5})-of-(\d{5})\.gguf$", re.IGNORECASE)
_FIRST_SHARD = "00001"
_SHARD_WILDCARD = "?????"


@dataclass(frozen=True, slots=True)
class ModelEntry:
    """One loadable model: a single file or a shard group presented as one item."""

    index: int
    path: str
    display_name: str
    base_name: str
    pattern: str
    shard_count: int = 1

    @property
    def filename(self) -> str:
        """Return the file name of the primary part."""

        return os.path.basename(self.path)


def extract_base_name(file_path: str) -> str:
    """Return the base name used for per-model argument lookup.

    Shard files yield their group prefix; other files their name without
    the model extension.
    """
    name = os.path.basename(file_path)
    match = SHARD_PATTERN.match(name)
    if match:
        return match.group(1)
    if name.lower().endswith(MODEL_FILE_SUFFIX):
        return name[: -len(MODEL_FILE_SUFFIX)]
    return name


def _iter_model_files(root: Path, *, recursive: bool) -> Iterator[Path]:
    if recursive:
        for dirpath, _dirnames, filenames in os.walk(root):
            for filename in filenames:
                if filename.lower().endswith(MODEL_FILE_SUFFIX):
                    yield Path(dirpath) / filename
        return
    for child in root.iterdir():
        if child.is_file() and child.name.lower().endswith(MODEL_FILE_SUFFIX):
            yield child


def scan_models(
    directory: Path | str,
    *,
    recursive: bool = True,
    exclude_patterns: Sequence[str] = (),
) -> list[ModelEntry]:
    """Scan ``directory`` for model files and group shards into entries.

    Parameters
    ----------
    directory : Path or str
        Model directory to scan.
    recursive : bool, default True
        Descend into sub-directories.
    exclude_patterns : Sequence[str], optional
        Glob patterns matched against paths relative to ``directory``.

    Returns
    -------
    list[ModelEntry]
        Entries ordered by display name; ``index`` is the position in this list.

    Raises
    ------
    CatalogError
        If the directory does not exist or cannot be read.
    """
    root = Path(directory).expanduser()
    if not root.is_dir():
        raise CatalogError(f"Model directory not found: {root}")

    try:
        files = sorted(
            str(path.resolve()) for path in _iter_model_files(root, recursive=recursive)
        )
    except OSError as exc:
        raise CatalogError(f"Failed to scan model directory '{root}': {exc}") from exc

    if exclude_patterns:
        root_resolved = root.resolve()
        kept: list[str] = []
        for file_path in files:
            rel = os.path.relpath(file_path, root_resolved)
            if matches_any(rel, exclude_patterns):
                logger.debug(f"Excluded model file: {rel}")
                continue
            kept.append(file_path)
        files = kept

    groups: dict[tuple[str, str], list[str]] = {}
    for file_path in files:
        name = os.path.basename(file_path)
        match = SHARD_PATTERN.match(name)
        key = match.group(1) if match else name
        groups.setdefault((os.path.dirname(file_path), key), []).append(file_path)

    pending: list[tuple[str, str, str, str, int]] = []
    for (_folder, key), parts in groups.items():
        first = min(parts)
        first_name = os.path.basename(first)
        pattern = os.path.join(
            os.path.dirname(first), first_name.replace(_FIRST_SHARD, _SHARD_WILDCARD, 1)
        )
        if len(parts) == 1 and not SHARD_PATTERN.match(first_name):
            display = first_name
        else:
            display = f"{key} ({len(parts)} shards)"
        pending.append((display, first, extract_base_name(first), pattern, len(parts)))

    pending.sort(key=lambda item: (item[0], item[1]))
    entries = [
        ModelEntry(
            index=idx,
            path=path,
            display_name=display,
            base_name=base_name,
            pattern=pattern,
            shard_count=count,
        )
        for idx, (display, path, base_name, pattern, count) in enumerate(pending)
    ]
    for entry in entries:
        logger.info(f"Found model: {entry.display_name} (baseName: {entry.base_name})")
    return entries


class ModelCatalog:
    """Immutable-per-scan list of model entries addressed by index."""

    def __init__(
        self,
        directory: Path | str,
        *,
        recursive: bool = True,
        exclude_patterns: Iterable[str] = (),
    ) -> None:
        self.directory = Path(directory)
        self.recursive = recursive
        self.exclude_patterns = tuple(exclude_patterns)
        self._entries: tuple[ModelEntry, ...] = ()

    @property
    def entries(self) -> tuple[ModelEntry, ...]:
        """Return the entries of the latest scan."""

        return self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ModelEntry]:
        return iter(self._entries)

    def rescan(self) -> tuple[ModelEntry, ...]:
        """Scan the directory again and replace the entry list.

        Raises
        ------
        CatalogError
            If the directory cannot be read.
        """
        self._entries = tuple(
            scan_models(
                self.directory,
                recursive=self.recursive,
                exclude_patterns=self.exclude_patterns,
            )
        )
        return self._entries

    def require_models(self) -> tuple[ModelEntry, ...]:
        """Scan and fail when nothing was found.

        Raises
        ------
        CatalogEmptyError
            If no model files exist in the directory.
        """
        entries = self.rescan()
        if not entries:
            raise CatalogEmptyError(f"No {MODEL_FILE_SUFFIX} files found in directory: {self.directory}")
        return entries

    def get(self, index: int) -> ModelEntry:
        """Return the entry at ``index``.

        Raises
        ------
        InvalidIndexError
            If ``index`` is outside ``0 <= index < len(catalog)``.
        """
        if not 0 <= index < len(self._entries):
            raise InvalidIndexError(
                f"Invalid model index {index}; expected 0..{len(self._entries) - 1}",
            )
        return self._entries[index]

    def find(self, name: str) -> ModelEntry | None:
        """Return the first entry whose display or file name contains ``name``."""

        for entry in self._entries:
            if name == entry.display_name or name in entry.display_name or name in entry.filename:
                return entry
        return None
