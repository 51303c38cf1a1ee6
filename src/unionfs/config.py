from typing import Any, Optional, Dict, List, Union
import os
from dataclasses import dataclass, field

from unionfs.upstream import DEFAULT_CACHE_TIME, DEFAULT_MIN_FREE_SPACE

UPSTREAM_SUFFIXES = ("ro", "nc", "writeback")


def parse_upstream_spec(spec: str) -> Dict[str, Any]:
    """
    Parse an upstream string of the form "[name=]path[:ro|:nc|:writeback]".

    ro marks the upstream read only, nc forbids creating new objects on it and
    writeback is recorded for the caller. Without an explicit name the last
    path component is used.

    Returns:
        Dict with keys name, root_path, writable, creatable and writeback.
    """
    spec = spec.strip()
    if not spec:
        raise ValueError("empty upstream specification")
    writable, creatable, writeback = True, True, False
    while True:
        head, sep, tail = spec.rpartition(":")
        if not sep or tail not in UPSTREAM_SUFFIXES:
            break
        if tail == "ro":
            writable = False
        elif tail == "nc":
            creatable = False
        else:
            writeback = True
        spec = head
    name, sep, root_path = spec.partition("=")
    if not sep:
        root_path = name
        name = os.path.basename(os.path.normpath(root_path))
    if not name or not root_path:
        raise ValueError(f"invalid upstream specification {spec!r}")
    return {
        'name': name,
        'root_path': root_path,
        'writable': writable,
        'creatable': creatable and writable,
        'writeback': writeback,
    }


@dataclass
class UnionConfig:
    """Configuration for a union of upstreams."""
    upstreams: List[Union[str, Dict[str, Any]]] = field(default_factory=list)
    action_policy: str = "epall"
    create_policy: str = "epmfs"
    search_policy: str = "epff"  # existing path variant of first found ("ff"), which is not registered here
    cache_time: float = DEFAULT_CACHE_TIME  # seconds, 0 disables metric caching
    min_free_space: int = DEFAULT_MIN_FREE_SPACE  # bytes, default for every upstream
    seed: Optional[int] = None  # seeds the tie-break random source

    def __post_init__(self):
        if self.cache_time < 0:
            raise ValueError(f"cache_time must be >= 0, got {self.cache_time}")
        if self.min_free_space < 0:
            raise ValueError(f"min_free_space must be >= 0, got {self.min_free_space}")
        for attr in ('action_policy', 'create_policy', 'search_policy'):
            setattr(self, attr, getattr(self, attr).lower())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UnionConfig":
        """Build a config from a plain dict, rejecting unknown keys."""
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"unknown union config keys: {', '.join(sorted(unknown))}")
        upstreams = data.get('upstreams', [])
        if isinstance(upstreams, str):
            upstreams = upstreams.split()
        return cls(**{**data, 'upstreams': list(upstreams)})

    def upstream_options(self) -> List[Dict[str, Any]]:
        """Resolve every upstream entry to a dict of constructor options."""
        resolved = []
        for item in self.upstreams:
            if isinstance(item, str):
                options = parse_upstream_spec(item)
            else:
                options = dict(item)
                if 'name' not in options:
                    raise ValueError(f"upstream {item!r} has no name")
            options.setdefault('min_free_space', self.min_free_space)
            options.setdefault('cache_time', self.cache_time)
            resolved.append(options)
        names = [o['name'] for o in resolved]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate upstream names: {', '.join(duplicates)}")
        return resolved
