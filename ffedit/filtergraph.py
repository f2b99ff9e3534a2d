"""Structured ffmpeg filter graphs.

Filters are described as stages (name, positional args, named options, pad
labels) and only turned into ffmpeg's textual syntax by :meth:`render`.
Every user-influenced value goes through :func:`escape_filter_value`, so
arbitrary text can never terminate an option, open a new filter or add a
pad label.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence, Tuple

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]+$")
_LABEL_RE = re.compile(r"^[A-Za-z0-9_:.]+$")

# ffmpeg unescapes twice: once when splitting the graph into filters, once
# when splitting a filter's arguments into options.
_OPTION_SPECIALS = frozenset("\\':")
_GRAPH_SPECIALS = frozenset("\\'[],;")


def _backslash(text: str, specials: frozenset) -> str:
    return "".join("\\" + ch if ch in specials else ch for ch in text)


def format_number(value: float) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    text = f"{float(value):.6f}".rstrip("0").rstrip(".")
    return text if text not in {"", "-0"} else "0"


def escape_filter_value(value: Any) -> str:
    """Render ``value`` as one literal option value inside a filter graph."""
    if isinstance(value, (int, float)):
        text = format_number(value)
    else:
        text = str(value)
    return _backslash(_backslash(text, _OPTION_SPECIALS), _GRAPH_SPECIALS)


def _identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid filter identifier: {name!r}")
    return name


def _label(name: str) -> str:
    if not _LABEL_RE.match(name):
        raise ValueError(f"Invalid pad label: {name!r}")
    return f"[{name}]"


@dataclass
class FilterStage:
    name: str
    args: Tuple[Any, ...] = ()
    options: Dict[str, Any] = field(default_factory=dict)
    inputs: Tuple[str, ...] = ()
    outputs: Tuple[str, ...] = ()

    def render(self) -> str:
        params = [escape_filter_value(arg) for arg in self.args]
        params.extend(
            f"{_identifier(key)}={escape_filter_value(value)}"
            for key, value in self.options.items()
        )
        body = _identifier(self.name)
        if params:
            body += "=" + ":".join(params)
        head = "".join(_label(pad) for pad in self.inputs)
        tail = "".join(_label(pad) for pad in self.outputs)
        return head + body + tail


@dataclass
class FilterChain:
    stages: List[FilterStage] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.stages)

    def append(self, stage: FilterStage) -> "FilterChain":
        self.stages.append(stage)
        return self

    def render(self) -> str:
        return ",".join(stage.render() for stage in self.stages)


@dataclass
class FilterGraph:
    chains: List[FilterChain] = field(default_factory=list)

    def __bool__(self) -> bool:
        return any(self.chains)

    def add(self, *stages: FilterStage) -> "FilterGraph":
        self.chains.append(FilterChain(list(stages)))
        return self

    def render(self) -> str:
        return ";".join(chain.render() for chain in self.chains if chain)


def chain(stages: Iterable[FilterStage]) -> FilterChain:
    return FilterChain(list(stages))


def stage(name: str, *args: Any, inputs: Sequence[str] = (), outputs: Sequence[str] = (), **options: Any) -> FilterStage:
    return FilterStage(name, tuple(args), dict(options), tuple(inputs), tuple(outputs))
