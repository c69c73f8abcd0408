"""
Module name → ``.beam`` path resolution.

Resolution order for a name (anything without ``/`` that does not end
in ``.beam``):

1. the current directory;
2. ``_build/*/lib/*/ebin`` of the nearest Mix project above the current
   directory;
3. extra search paths (``--path``, ``BEAM_SPY_PATH``);
4. ``*/ebin`` under each ``ERL_LIBS`` entry.

Names starting with an uppercase letter are tried as Elixir aliases
(``Elixir.<Name>.beam``) first, then as written.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, Union

from beam_spy.errors import ResolveError

_log = logging.getLogger(__name__)


def is_path_like(target: str) -> bool:
    return "/" in target or os.sep in target or target.endswith(".beam")


def beam_file_names(module: str) -> List[str]:
    if module[:1].isupper():
        return [f"Elixir.{module}.beam", f"{module}.beam"]
    return [f"{module}.beam"]


def find_mix_project(start: Path) -> Optional[Path]:
    for directory in (start, *start.parents):
        if (directory / "mix.exs").is_file():
            return directory
    return None


def mix_project_paths(cwd: Path) -> List[Path]:
    root = find_mix_project(cwd)
    if root is None:
        return []
    return sorted(root.glob("_build/*/lib/*/ebin"))


def erl_libs_paths(environ: Mapping[str, str]) -> List[Path]:
    paths: List[Path] = []
    for lib in filter(None, environ.get("ERL_LIBS", "").split(os.pathsep)):
        paths.extend(sorted(Path(lib).glob("*/ebin")))
    return paths


def search_paths(
    extra: Sequence[Union[str, Path]] = (),
    *,
    cwd: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> List[Path]:
    """The directories :func:`resolve` will look in, in order."""
    cwd = Path.cwd() if cwd is None else cwd
    env = os.environ if environ is None else environ
    return (
        [cwd]
        + mix_project_paths(cwd)
        + [Path(p) for p in extra]
        + erl_libs_paths(env)
    )


def resolve(
    target: str,
    extra: Sequence[Union[str, Path]] = (),
    *,
    cwd: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Path:
    """Map *target* (a path or a module name) to an existing file.

    Raises :class:`ResolveError` when nothing matches.
    """
    if is_path_like(target):
        path = Path(target)
        if not path.is_absolute() and cwd is not None:
            path = cwd / path
        if path.is_file():
            return path.resolve()
        raise ResolveError(target, [str(path)])

    names = beam_file_names(target)
    searched = search_paths(extra, cwd=cwd, environ=environ)
    for directory in searched:
        for name in names:
            candidate = directory / name
            if candidate.is_file():
                _log.debug("resolved %s to %s", target, candidate)
                return candidate
    raise ResolveError(target, [str(d) for d in searched])
