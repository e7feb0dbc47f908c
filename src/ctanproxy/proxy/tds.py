"""Archive decoding and TDS (TeX Directory Structure) classification.

A CTAN archive is unpacked in memory and every useful entry is rewritten to
the path a TeX distribution expects it at. TeX sources are kept as text and
scanned for ``\\RequirePackage`` dependencies; fonts are kept as base64.

The path classifier and the dependency scanner are plain functions so that
stricter implementations can be passed to ``decode_archive`` without
touching the fallback chain.
"""

from __future__ import annotations

import base64
import hashlib
import io
import json
import logging
import posixpath
import re
import zipfile
import zlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple
from types import MappingProxyType

from ..common.logging_utils import extra_context
from ..constants import Constants
from .errors import ArchiveError

logger = logging.getLogger(__name__)


class FileFamily(Enum):
    """How an archive entry is treated."""

    TEX = "tex"
    FONT = "font"


class Encoding(Enum):
    TEXT = "text"
    BASE64 = "base64"


TEX_EXTENSIONS: FrozenSet[str] = frozenset(
    {".sty", ".cls", ".def", ".cfg", ".tex", ".fd", ".clo", ".ltx"}
)
FONT_EXTENSIONS: FrozenSet[str] = frozenset(
    {".pfb", ".pfm", ".afm", ".tfm", ".vf", ".map", ".enc"}
)

# Fallback placement for fonts found outside a fonts/<kind>/ subtree.
FONT_DIR_BY_EXTENSION: Mapping[str, str] = {
    ".pfb": "fonts/type1/public",
    ".pfm": "fonts/type1/public",
    ".afm": "fonts/afm/public",
    ".tfm": "fonts/tfm/public",
    ".vf": "fonts/vf/public",
    ".map": "fonts/map/dvips",
    ".enc": "fonts/enc/dvips",
}
FONT_KINDS: Tuple[str, ...] = ("type1", "tfm", "vf", "afm", "enc", "map", "opentype", "truetype")

_EXCLUDED_DIRS = ("doc", "source")
_TEX_SUBTREE = re.compile(r"(?:^|/)tex/(latex|generic)/([^/]+)/")
_FONT_SUBTREE = re.compile(
    r"(?:^|/)(fonts/(?:%s)(?:/[^/]+)*)/[^/]+$" % "|".join(FONT_KINDS)
)
_REQUIRE_PACKAGE = re.compile(r"\\RequirePackage(?:\[[^\]]*\])?\{([^}]+)\}")
_IDENTIFIER = re.compile(r"[A-Za-z][A-Za-z0-9-]*")


@dataclass(frozen=True)
class Placement:
    """Where an archive entry lands in the TDS tree."""

    family: FileFamily
    directory: str


PathClassifier = Callable[[str, str, str], Optional[Placement]]
DependencyScanner = Callable[[str], Iterable[str]]


@dataclass(frozen=True)
class ExtractedFile:
    content: str
    encoding: Encoding

    def to_dict(self) -> Dict[str, str]:
        return {"content": self.content, "encoding": self.encoding.value}


@dataclass(frozen=True)
class ExtractedFileSet:
    """Installable files of one package, keyed by absolute TDS path."""

    name: str
    files: Mapping[str, ExtractedFile] = field(default_factory=dict)
    dependencies: Tuple[str, ...] = ()

    @property
    def total_files(self) -> int:
        return len(self.files)

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "files": {path: entry.to_dict() for path, entry in self.files.items()},
            "totalFiles": self.total_files,
            "dependencies": list(self.dependencies),
        }

    def to_json(self) -> bytes:
        """Serialise to the compact JSON document stored in the object store."""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def is_excluded(path: str) -> bool:
    """True for entries under a ``doc/`` or ``source/`` directory."""
    segments = path.strip("/").split("/")[:-1]
    return any(segment in _EXCLUDED_DIRS for segment in segments)


def _extension(path: str) -> str:
    return posixpath.splitext(path)[1].lower()


def classify_path(path: str, package_name: str, tree_root: str = Constants.TREE_ROOT) -> Optional[Placement]:
    """Map an archive path to its TDS directory.

    Args:
        path: Entry name inside the archive.
        package_name: Package the archive was fetched for; used when the
            path carries no usable TDS subtree.
        tree_root: Absolute root of the TDS tree.

    Returns:
        The placement, or None when the entry should be dropped.
    """
    if is_excluded(path):
        return None
    ext = _extension(path)
    root = tree_root.rstrip("/")

    if ext in TEX_EXTENSIONS:
        match = _TEX_SUBTREE.search(path)
        if match:
            return Placement(FileFamily.TEX, f"{root}/tex/{match.group(1)}/{match.group(2)}")
        return Placement(FileFamily.TEX, f"{root}/tex/latex/{package_name}")

    if ext in FONT_EXTENSIONS:
        match = _FONT_SUBTREE.search(path)
        if match:
            return Placement(FileFamily.FONT, f"{root}/{match.group(1)}")
        base_dir = FONT_DIR_BY_EXTENSION.get(ext, "fonts/type1/public")
        return Placement(FileFamily.FONT, f"{root}/{base_dir}/{package_name}")

    return None


def scan_dependencies(text: str) -> FrozenSet[str]:
    """Collect package names named by ``\\RequirePackage`` in ``text``.

    Both ``\\RequirePackage{a,b}`` and ``\\RequirePackage[opts]{a,b}`` are
    recognised. Names not looking like plain identifiers (macros,
    ``#1`` parameters, paths) are ignored.
    """
    found = set()
    for match in _REQUIRE_PACKAGE.finditer(text):
        for candidate in match.group(1).split(","):
            candidate = candidate.strip()
            if _IDENTIFIER.fullmatch(candidate):
                found.add(candidate)
    return frozenset(found)


def rules_fingerprint() -> str:
    """Short digest of the classification tables.

    Changes whenever an extension list, the font fallback table or one of
    the path patterns changes.
    """
    material = json.dumps(
        {
            "tex": sorted(TEX_EXTENSIONS),
            "font": sorted(FONT_EXTENSIONS),
            "font_dirs": dict(sorted(FONT_DIR_BY_EXTENSION.items())),
            "excluded": list(_EXCLUDED_DIRS),
            "patterns": [_TEX_SUBTREE.pattern, _FONT_SUBTREE.pattern, _REQUIRE_PACKAGE.pattern],
        },
        sort_keys=True,
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:8]


def unpack_zip(data: bytes) -> Dict[str, bytes]:
    """Decode a ZIP archive into a mapping of entry name to bytes.

    Raises:
        ArchiveError: If ``data`` is not a readable ZIP archive.
    """
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            return {
                info.filename: archive.read(info)
                for info in archive.infolist()
                if not info.is_dir()
            }
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, zlib.error, NotImplementedError) as exc:
        raise ArchiveError(f"Invalid ZIP archive: {exc}") from exc


def decode_archive(
    data: bytes,
    package_name: str,
    *,
    tree_root: str = Constants.TREE_ROOT,
    classifier: PathClassifier = classify_path,
    scanner: DependencyScanner = scan_dependencies,
) -> Optional[ExtractedFileSet]:
    """Unpack ``data`` and rewrite its entries into the TDS layout.

    Args:
        data: Raw ZIP bytes.
        package_name: Name used for default directories and excluded from
            the dependency list.
        tree_root: Absolute root of the TDS tree.
        classifier: ``(path, package_name, tree_root) -> Placement | None``.
        scanner: ``text -> iterable of package names``.

    Returns:
        The extracted file set, or None when no entry survived
        classification.

    Raises:
        ArchiveError: If the archive cannot be decoded.
    """
    entries = unpack_zip(data)
    logger.info(
        "Extracting archive (%.1f KB, %d entries)",
        len(data) / 1024,
        len(entries),
        extra=extra_context(event="archive_extract", component="tds", package=package_name),
    )

    files: Dict[str, ExtractedFile] = {}
    dependencies = set()
    for path, content in entries.items():
        placement = classifier(path, package_name, tree_root)
        if placement is None:
            continue
        target = f"{placement.directory}/{posixpath.basename(path)}"
        if placement.family is FileFamily.TEX:
            text = content.decode("utf-8", errors="replace")
            files[target] = ExtractedFile(text, Encoding.TEXT)
            dependencies.update(scanner(text))
        else:
            files[target] = ExtractedFile(
                base64.b64encode(content).decode("ascii"), Encoding.BASE64
            )

    dependencies.discard(package_name)
    logger.info(
        "Extracted %d files, deps: %s",
        len(files),
        ", ".join(sorted(dependencies)) or "none",
        extra=extra_context(event="archive_extracted", component="tds", package=package_name),
    )
    if not files:
        return None
    return ExtractedFileSet(
        name=package_name,
        files=MappingProxyType(files),
        dependencies=tuple(sorted(dependencies)),
    )
