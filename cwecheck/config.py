"""
cwecheck/config.py
══════════════════

Analysis configuration: the extern-function knowledge the analyses and
detectors rely on, plus run settings.

Sources, in increasing priority:

  1. built-in defaults (this module)
  2. a JSON configuration file (``--config``)
  3. environment (``CWECHECK_JOBS``)
  4. command-line flags

A configuration file is a JSON object.  List-valued keys replace the
built-in list; each may instead be given as ``{"add": [...], "remove":
[...]}`` to edit it.  Unknown keys are rejected with :class:`ConfigError`.

Extern signatures
─────────────────
Signatures are written compactly as ``"ptr*, int -> ptr"``: a parameter
list of ``ptr`` / ``int`` / ``any`` tags, an optional ``*`` marking a
pointer parameter the callee dereferences, and an optional return tag.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from cwecheck.errors import ConfigError

logger = logging.getLogger(__name__)

JOBS_ENV_VAR = "CWECHECK_JOBS"


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — EXTERN SIGNATURES
# ═════════════════════════════════════════════════════════════════════════

_TYPE_TAGS = frozenset({"ptr", "int", "any"})


@dataclass(frozen=True)
class ExternSignature:
    """Integer-class parameter and return types of a library function."""
    parameters: Tuple[str, ...] = ()
    returns: Optional[str] = None
    dereferenced: FrozenSet[int] = frozenset()

    @classmethod
    def parse(cls, text: str) -> "ExternSignature":
        params_text, arrow, ret_text = text.partition("->")
        ret = ret_text.strip() or None
        if ret is not None and ret not in _TYPE_TAGS:
            raise ConfigError(f"bad return type {ret!r}", signature=text)
        params = []
        derefs = set()
        for idx, raw in enumerate(p.strip() for p in params_text.split(",") if p.strip()):
            tag = raw.rstrip("*")
            if tag not in _TYPE_TAGS:
                raise ConfigError(f"bad parameter type {raw!r}", signature=text)
            if raw.endswith("*"):
                if tag != "ptr":
                    raise ConfigError(f"only pointers can be dereferenced: {raw!r}", signature=text)
                derefs.add(idx)
            params.append(tag)
        return cls(tuple(params), ret, frozenset(derefs))

    def __str__(self) -> str:
        params = ", ".join(
            p + ("*" if i in self.dereferenced else "") for i, p in enumerate(self.parameters)
        )
        return f"{params} -> {self.returns}" if self.returns else params


_DEFAULT_SIGNATURES: Dict[str, str] = {
    "malloc": "int -> ptr",
    "calloc": "int, int -> ptr",
    "realloc": "ptr, int -> ptr",
    "free": "ptr",
    "strdup": "ptr* -> ptr",
    "strndup": "ptr*, int -> ptr",
    "memcpy": "ptr*, ptr*, int -> ptr",
    "memmove": "ptr*, ptr*, int -> ptr",
    "memset": "ptr*, int, int -> ptr",
    "memcmp": "ptr*, ptr*, int -> int",
    "memchr": "ptr*, int, int -> ptr",
    "strcpy": "ptr*, ptr* -> ptr",
    "strncpy": "ptr*, ptr*, int -> ptr",
    "strcat": "ptr*, ptr* -> ptr",
    "strncat": "ptr*, ptr*, int -> ptr",
    "strlen": "ptr* -> int",
    "strcmp": "ptr*, ptr* -> int",
    "strncmp": "ptr*, ptr*, int -> int",
    "strchr": "ptr*, int -> ptr",
    "strrchr": "ptr*, int -> ptr",
    "strstr": "ptr*, ptr* -> ptr",
    "puts": "ptr* -> int",
    "printf": "ptr* -> int",
    "fprintf": "ptr*, ptr* -> int",
    "sprintf": "ptr*, ptr* -> int",
    "snprintf": "ptr*, int, ptr* -> int",
    "fopen": "ptr*, ptr* -> ptr",
    "fclose": "ptr* -> int",
    "fread": "ptr*, int, int, ptr* -> int",
    "fwrite": "ptr*, int, int, ptr* -> int",
    "fgets": "ptr*, int, ptr* -> ptr",
    "fputs": "ptr*, ptr* -> int",
    "getenv": "ptr* -> ptr",
    "atoi": "ptr* -> int",
    "strtol": "ptr*, ptr, int -> int",
    "open": "ptr*, int, int -> int",
    "creat": "ptr*, int -> int",
    "read": "int, ptr*, int -> int",
    "write": "int, ptr*, int -> int",
    "close": "int -> int",
    "access": "ptr*, int -> int",
    "stat": "ptr*, ptr* -> int",
    "chmod": "ptr*, int -> int",
    "umask": "int -> int",
}


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — DEFAULT FUNCTION LISTS
# ═════════════════════════════════════════════════════════════════════════

_DEFAULT_ALLOCATORS = (
    "malloc", "calloc", "realloc", "reallocarray", "aligned_alloc", "memalign",
    "valloc", "pvalloc", "strdup", "strndup",
    "_Znwm", "_Znam", "_Znwj", "_Znaj",
    "HeapAlloc", "LocalAlloc", "GlobalAlloc", "VirtualAlloc",
)

_DEFAULT_NULL_RETURNING = (
    "malloc", "calloc", "realloc", "reallocarray", "aligned_alloc", "memalign",
    "valloc", "strdup", "strndup",
    "fopen", "fopen64", "fdopen", "freopen", "tmpfile", "popen",
    "getenv", "secure_getenv",
    "strchr", "strrchr", "strstr", "strpbrk", "memchr",
    "opendir", "fdopendir", "readdir",
    "dlopen", "dlsym",
    "getpwnam", "getpwuid", "getgrnam", "getgrgid",
    "localtime", "gmtime",
    "HeapAlloc", "LocalAlloc", "GlobalAlloc", "VirtualAlloc",
)

_DEFAULT_PERMISSION_MASKS = ("umask",)

_DEFAULT_RESOURCE_CREATORS = (
    "open", "open64", "openat", "openat64", "creat", "creat64",
    "fopen", "fopen64", "freopen", "mkdir", "mkdirat", "mkfifo", "mknod",
    "mkstemp", "mkostemp", "tmpfile", "socket", "bind", "shm_open",
    "CreateFileA", "CreateFileW",
)

_DEFAULT_TOCTOU_CHECKS = (
    "access", "faccessat", "euidaccess", "eaccess",
    "stat", "stat64", "lstat", "lstat64", "fstatat", "fstatat64",
    "__xstat", "__xstat64", "__lxstat", "__lxstat64",
)

_DEFAULT_TOCTOU_USES = (
    "open", "open64", "openat", "fopen", "fopen64", "creat", "creat64",
    "chmod", "chown", "lchown", "truncate", "unlink", "remove", "rename",
    "link", "symlink", "mkdir", "rmdir", "opendir",
    "execve", "execv", "execvp", "execl", "execlp",
)

_DEFAULT_DANGEROUS = (
    "gets", "strcpy", "stpcpy", "strcat", "sprintf", "vsprintf",
    "scanf", "sscanf", "fscanf", "vscanf", "vsscanf", "vfscanf",
    "realpath", "getwd", "tmpnam", "tempnam", "mktemp",
    "lstrcpyA", "lstrcpyW", "lstrcatA", "lstrcatW", "wcscpy", "wcscat",
)


def _fs(names: Iterable[str]) -> FrozenSet[str]:
    return frozenset(names)


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 — ANALYSIS CONFIG
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AnalysisConfig:
    """
    Settings of one analysis run.

    Attributes
    ----------
    allocators             : calls whose return value points to the heap
    null_returning         : calls whose return value may be NULL
    permission_masks       : umask-style calls
    resource_creators      : calls that create files or other resources
    toctou_checks          : file-state checks
    toctou_uses            : file-state uses
    dangerous_functions    : calls flagged by the dangerous-function detector
    signatures             : extern signatures by function name
    iteration_bound_scale  : multiplier applied to every fixpoint bound
    jobs                   : worker threads for per-function analysis
    """
    allocators: FrozenSet[str] = field(default_factory=lambda: _fs(_DEFAULT_ALLOCATORS))
    null_returning: FrozenSet[str] = field(default_factory=lambda: _fs(_DEFAULT_NULL_RETURNING))
    permission_masks: FrozenSet[str] = field(default_factory=lambda: _fs(_DEFAULT_PERMISSION_MASKS))
    resource_creators: FrozenSet[str] = field(default_factory=lambda: _fs(_DEFAULT_RESOURCE_CREATORS))
    toctou_checks: FrozenSet[str] = field(default_factory=lambda: _fs(_DEFAULT_TOCTOU_CHECKS))
    toctou_uses: FrozenSet[str] = field(default_factory=lambda: _fs(_DEFAULT_TOCTOU_USES))
    dangerous_functions: FrozenSet[str] = field(default_factory=lambda: _fs(_DEFAULT_DANGEROUS))
    signatures: Mapping[str, ExternSignature] = field(
        default_factory=lambda: MappingProxyType(
            {name: ExternSignature.parse(sig) for name, sig in _DEFAULT_SIGNATURES.items()}
        )
    )
    iteration_bound_scale: int = 1
    jobs: int = 1

    _LIST_KEYS = (
        "allocators", "null_returning", "permission_masks", "resource_creators",
        "toctou_checks", "toctou_uses", "dangerous_functions",
    )

    def __post_init__(self) -> None:
        if self.jobs < 1:
            raise ConfigError("jobs must be at least 1", jobs=self.jobs)
        if self.iteration_bound_scale < 1:
            raise ConfigError(
                "iteration_bound_scale must be at least 1",
                iteration_bound_scale=self.iteration_bound_scale,
            )

    def signature_of(self, name: Optional[str]) -> Optional[ExternSignature]:
        if name is None:
            return None
        return self.signatures.get(name)

    # ── loading ──────────────────────────────────────────────────────

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base: Optional["AnalysisConfig"] = None) -> "AnalysisConfig":
        """Build a config from a parsed JSON object, on top of ``base``."""
        if not isinstance(data, Mapping):
            raise ConfigError("configuration must be a JSON object")
        base = base or cls()
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError("unknown configuration keys", keys=", ".join(unknown))

        changes: Dict[str, Any] = {}
        for key, value in data.items():
            if key in cls._LIST_KEYS:
                changes[key] = _edit_name_set(key, getattr(base, key), value)
            elif key == "signatures":
                changes[key] = _edit_signatures(base.signatures, value)
            else:
                if not isinstance(value, int) or isinstance(value, bool):
                    raise ConfigError(f"{key} must be an integer", value=value)
                changes[key] = value
        return replace(base, **changes)

    @classmethod
    def from_json_file(cls, path: str, base: Optional["AnalysisConfig"] = None) -> "AnalysisConfig":
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except OSError as exc:
            raise ConfigError(f"cannot read configuration: {exc.strerror}", path=path) from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"invalid JSON: {exc.msg}", path=path, line=exc.lineno) from exc
        logger.debug("loaded configuration from %s", path)
        return cls.from_mapping(data, base)

    def with_environment(self, environ: Optional[Mapping[str, str]] = None) -> "AnalysisConfig":
        """Apply ``CWECHECK_JOBS`` from the environment, if set."""
        environ = os.environ if environ is None else environ
        raw = environ.get(JOBS_ENV_VAR)
        if raw is None or raw == "":
            return self
        try:
            jobs = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{JOBS_ENV_VAR} must be an integer", value=raw) from exc
        return replace(self, jobs=jobs)


def _edit_name_set(key: str, current: FrozenSet[str], value: Any) -> FrozenSet[str]:
    if isinstance(value, list):
        result: FrozenSet[str] = frozenset()
        add, remove = value, []
    elif isinstance(value, Mapping):
        extra = set(value) - {"add", "remove"}
        if extra:
            raise ConfigError(f"{key}: only 'add' and 'remove' are allowed", keys=", ".join(sorted(extra)))
        result = current
        add, remove = value.get("add", []), value.get("remove", [])
    else:
        raise ConfigError(f"{key} must be a list or an add/remove object")
    for name in list(add) + list(remove):
        if not isinstance(name, str) or not name:
            raise ConfigError(f"{key}: function names must be non-empty strings", value=name)
    return (result | frozenset(add)) - frozenset(remove)


def _edit_signatures(current: Mapping[str, ExternSignature], value: Any) -> Mapping[str, ExternSignature]:
    if not isinstance(value, Mapping):
        raise ConfigError("signatures must be an object of name → signature")
    merged = dict(current)
    for name, text in value.items():
        if text is None:
            merged.pop(name, None)
            continue
        if not isinstance(text, str):
            raise ConfigError("signature must be a string", function=name)
        merged[name] = ExternSignature.parse(text)
    return MappingProxyType(merged)


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> AnalysisConfig:
    """Defaults, then the optional file, then the environment."""
    config = AnalysisConfig()
    if path:
        config = AnalysisConfig.from_json_file(path, config)
    return config.with_environment(environ)


__all__ = [
    "ExternSignature",
    "AnalysisConfig",
    "load_config",
    "JOBS_ENV_VAR",
]
