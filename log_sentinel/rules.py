from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple, Union


def _tuple_of_str(values: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    # Dedupe while keeping config order so keyword iteration is stable
    out = []
    for v in values or ():
        s = str(v)
        if s and s not in out:
            out.append(s)
    return tuple(out)


@dataclass(frozen=True)
class FileRule:
    path: str
    keywords: Tuple[str, ...] = ()
    enabled: bool = True

    def __post_init__(self):
        object.__setattr__(self, "path", os.path.abspath(self.path) if self.path else "")
        object.__setattr__(self, "keywords", _tuple_of_str(self.keywords))

    @classmethod
    def from_dict(cls, item: Dict[str, Any]) -> "FileRule":
        return cls(
            path=str(item.get("path") or ""),
            keywords=item.get("keywords") or (),
            enabled=bool(item.get("enabled", True)),
        )


@dataclass(frozen=True)
class DirectoryRule:
    path: str
    keywords: Tuple[str, ...] = ()
    extensions: Tuple[str, ...] = ()
    recursive: bool = False
    exclude_dirs: Tuple[str, ...] = field(default_factory=tuple)
    enabled: bool = True

    def __post_init__(self):
        object.__setattr__(self, "path", os.path.abspath(self.path) if self.path else "")
        object.__setattr__(self, "keywords", _tuple_of_str(self.keywords))
        object.__setattr__(self, "extensions", _tuple_of_str(e.lower() for e in (self.extensions or ())))
        object.__setattr__(self, "exclude_dirs", _tuple_of_str(self.exclude_dirs))

    @classmethod
    def from_dict(cls, item: Dict[str, Any]) -> "DirectoryRule":
        return cls(
            path=str(item.get("path") or ""),
            keywords=item.get("keywords") or (),
            extensions=item.get("extensions") or (),
            recursive=bool(item.get("recursive", False)),
            exclude_dirs=item.get("exclude_dirs") or (),
            enabled=bool(item.get("enabled", True)),
        )


Rule = Union[FileRule, DirectoryRule]


@dataclass(frozen=True)
class WatchBinding:
    """Keywords and originating rule that apply to one concrete path."""
    keywords: Tuple[str, ...]
    rule: Rule


def matches_extension(path: str, extensions: Iterable[str]) -> bool:
    ext = os.path.splitext(path)[1].lower()
    if not ext:
        return False
    return any(ext == e.lower() for e in extensions)


def is_excluded_dir(path: str, exclude_dirs: Iterable[str]) -> bool:
    """Substring match: ``/var/log/cache/x`` is excluded by ``cache``."""
    return any(ex and ex in path for ex in exclude_dirs)


def is_in_directory(path: str, directory: str, recursive: bool) -> bool:
    if recursive:
        return path.startswith(directory.rstrip(os.sep) + os.sep)
    return os.path.dirname(path) == directory


def match_keyword(line: str, keywords: Iterable[str]) -> Optional[str]:
    """Return the first keyword contained in ``line`` (case-insensitive), or None."""
    low = line.lower()
    for kw in keywords:
        if kw.lower() in low:
            return kw
    return None


def contains_keyword(line: str, keywords: Iterable[str]) -> bool:
    return match_keyword(line, keywords) is not None
