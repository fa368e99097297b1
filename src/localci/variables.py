# variables.py
from __future__ import annotations

import re
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import VariableError

# $$          -> literal "$"
# ${NAME}     -> reference
# $NAME       -> reference
# ${...}      with anything that is not a plain name is left alone (shell syntax)
_TOKEN = re.compile(r"\$\$|\$\{([^}]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")
_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

# Set by the executor for every job; always visible to interpolation.
PREDEFINED_VARIABLES = (
    "CI",
    "CI_JOB_NAME",
    "CI_JOB_STAGE",
    "CI_JOB_ATTEMPT",
    "CI_PIPELINE_ID",
    "CI_PROJECT_DIR",
    "CI_UPSTREAM_WARNING",
)

Lookup = Callable[[str], Optional[str]]
OnMissing = Callable[[str], str]


def check_syntax(text: str, *, where: str) -> None:
    """Raise VariableError for an unclosed `${` or an empty `${}`."""
    # "$$" is an escaped dollar; drop those pairs before looking for "${"
    scan = text.replace("$$", "")
    i = scan.find("${")
    while i != -1:
        close = scan.find("}", i + 2)
        if close == -1:
            raise VariableError(scan[i + 2:i + 22], f"{where}: unclosed '${{' in {text!r}")
        if close == i + 2:
            raise VariableError("", f"{where}: empty variable reference '${{}}' in {text!r}")
        i = scan.find("${", close + 1)


def references(text: str) -> List[str]:
    """Names referenced by `text`, in order of first appearance."""
    out: List[str] = []
    for m in _TOKEN.finditer(text):
        name = m.group(1) if m.group(1) is not None else m.group(2)
        if name is None or not _NAME.fullmatch(name):
            continue
        if name not in out:
            out.append(name)
    return out


def interpolate(text: str, lookup: Lookup, on_missing: OnMissing) -> str:
    def repl(m: re.Match) -> str:
        if m.group(0) == "$$":
            return "$"
        name = m.group(1) if m.group(1) is not None else m.group(2)
        if not _NAME.fullmatch(name):
            return m.group(0)
        value = lookup(name)
        if value is None:
            return on_missing(name)
        return value

    return _TOKEN.sub(repl, text)


def resolve_layers(
    layers: Sequence[Mapping[str, str]],
    on_missing: OnMissing,
) -> Dict[str, str]:
    """
    Merge variable layers (lowest precedence first) and expand references.

    A reference resolves to the highest-precedence definition of that name,
    so an override also reaches every value that mentions it. A value that
    references its own name sees the definition from the layer below:
    `PATH: "$PATH:/opt/bin"` extends the inherited PATH. Reference cycles
    go through `on_missing`.
    """
    stacks: Dict[str, List[str]] = {}
    for layer in layers:
        for key, value in layer.items():
            stacks.setdefault(key, []).append(value)

    done: Dict[Tuple[str, int], str] = {}

    def expand(name: str, level: int, visiting: FrozenSet[Tuple[str, int]]) -> str:
        if (name, level) in done:
            return done[(name, level)]
        visiting = visiting | {(name, level)}

        def lookup(ref: str) -> Optional[str]:
            if ref not in stacks:
                return None
            target = level - 1 if ref == name else len(stacks[ref]) - 1
            if target < 0 or (ref, target) in visiting:
                return None
            return expand(ref, target, visiting)

        value = interpolate(stacks[name][level], lookup, on_missing)
        done[(name, level)] = value
        return value

    return {name: expand(name, len(values) - 1, frozenset()) for name, values in stacks.items()}


def unresolved(values: Mapping[str, str], known: Iterable[str]) -> List[str]:
    """Referenced names in `values` that are neither in `values` nor `known`."""
    visible = set(known) | set(values)
    missing: List[str] = []
    for value in values.values():
        for name in references(value):
            if name not in visible and name not in missing:
                missing.append(name)
    return missing
