"""Source map support for remapping Istanbul coverage onto original sources.

Coverage recorded against bundled or transpiled output is attributed back to
the files it was generated from. Only what remapping needs is implemented:
version 3 (non-indexed) maps with Base64 VLQ ``mappings`` and position
lookup with greatest-lower-bound / least-upper-bound bias.

A file whose map is missing, unreadable or maps nothing keeps its bundled
locations; remapping never fails a run.
"""

from __future__ import annotations

import bisect
import json
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import unquote

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────

_BASE64_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_BASE64_VALUES = {char: index for index, char in enumerate(_BASE64_CHARS)}

_VLQ_BASE_SHIFT = 5
_VLQ_BASE = 1 << _VLQ_BASE_SHIFT
_VLQ_BASE_MASK = _VLQ_BASE - 1
_VLQ_CONTINUATION_BIT = _VLQ_BASE

_SUPPORTED_VERSION = 3

# Segment lengths: 1 = generated column only, 4 = with source, 5 = with name
_SEGMENT_WITH_SOURCE = 4

_SCHEME_RE = re.compile(r"^(?P<scheme>[a-zA-Z][\w+.-]*)://")


class SourceMapError(Exception):
    """Raised when a source map cannot be parsed or used."""


class Bias(Enum):
    GREATEST_LOWER_BOUND = "glb"
    LEAST_UPPER_BOUND = "lub"


@dataclass(frozen=True)
class OriginalPosition:
    """A location in an original source file."""

    source: str
    """Resolved path of the original source."""

    line: int
    """1-based line number."""

    column: int
    """0-based column number."""


# ── VLQ decoding ─────────────────────────────────────────────────


def decode_vlq(segment: str) -> list[int]:
    """Decode one Base64 VLQ mapping segment into its signed integer fields."""
    values: list[int] = []
    value = 0
    shift = 0
    for char in segment:
        digit = _BASE64_VALUES.get(char)
        if digit is None:
            raise SourceMapError(f"Invalid base64 character {char!r} in mappings")
        value += (digit & _VLQ_BASE_MASK) << shift
        if digit & _VLQ_CONTINUATION_BIT:
            shift += _VLQ_BASE_SHIFT
            continue
        negative = value & 1
        value >>= 1
        values.append(-value if negative else value)
        value = 0
        shift = 0
    if shift:
        raise SourceMapError(f"Truncated VLQ segment: {segment!r}")
    return values


def _resolve_source(source: str, source_root: str, base_dir: str) -> str:
    """Resolve a ``sources`` entry to a filesystem path."""
    if source_root:
        source = source_root.rstrip("/") + "/" + source
    match = _SCHEME_RE.match(source)
    if match:
        remainder = unquote(source[match.end() :])
        if match.group("scheme") == "file":
            return os.path.normpath(remainder)
        # Bundler schemes (webpack://, ng://) hold project-relative paths
        source = remainder.lstrip("/")
    if os.path.isabs(source):
        return os.path.normpath(source)
    return os.path.normpath(os.path.join(base_dir, source))


# ── Source map ───────────────────────────────────────────────────


class SourceMap:
    """Parsed version 3 source map supporting original-position lookup."""

    def __init__(self, sources: list[str], lines: list[list[tuple[int, int, int, int]]]) -> None:
        self.sources = sources
        # Per generated line: (generated column, source index or -1, original line, original column)
        self._lines = lines
        self._columns = [[segment[0] for segment in line] for line in lines]

    @classmethod
    def from_json(cls, data: dict[str, Any] | str, *, base_dir: str = "") -> SourceMap:
        """Build a source map from its JSON document.

        Args:
            data: Decoded map, or its JSON text.
            base_dir: Directory that relative ``sources`` are resolved against.

        Raises:
            SourceMapError: If the document is not a usable version 3 map.
        """
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as exc:
                raise SourceMapError(f"Invalid source map JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise SourceMapError("Source map must be a JSON object")
        if "sections" in data:
            raise SourceMapError("Indexed source maps are not supported")
        if data.get("version") != _SUPPORTED_VERSION:
            raise SourceMapError(f"Unsupported source map version: {data.get('version')!r}")

        raw_sources = data.get("sources")
        mappings = data.get("mappings")
        if not isinstance(raw_sources, list) or not isinstance(mappings, str):
            raise SourceMapError("Source map requires 'sources' and 'mappings'")

        source_root = str(data.get("sourceRoot") or "")
        sources = [_resolve_source(str(src), source_root, base_dir) for src in raw_sources]
        return cls(sources, _parse_mappings(mappings, len(sources)))

    def original_position_for(
        self, line: int, column: int, *, bias: Bias = Bias.GREATEST_LOWER_BOUND
    ) -> OriginalPosition | None:
        """Look up the original position of a generated location.

        Args:
            line: 1-based generated line.
            column: 0-based generated column.
            bias: Pick the closest mapping at or before (GLB) or at or after
                (LUB) the column when there is no exact match.

        Returns:
            The original position, or None when the location is unmapped.
        """
        index = line - 1
        if index < 0 or index >= len(self._lines):
            return None
        columns = self._columns[index]
        if bias is Bias.GREATEST_LOWER_BOUND:
            pos = bisect.bisect_right(columns, column) - 1
        else:
            pos = bisect.bisect_left(columns, column)
        if pos < 0 or pos >= len(columns):
            return None
        _, source_index, orig_line, orig_column = self._lines[index][pos]
        if source_index < 0:
            return None
        return OriginalPosition(
            source=self.sources[source_index], line=orig_line + 1, column=orig_column
        )


def _parse_mappings(mappings: str, source_count: int) -> list[list[tuple[int, int, int, int]]]:
    """Decode the ``mappings`` string into per-line sorted segment lists."""
    lines: list[list[tuple[int, int, int, int]]] = []
    source_index = 0
    orig_line = 0
    orig_column = 0
    for raw_line in mappings.split(";"):
        generated_column = 0
        segments: list[tuple[int, int, int, int]] = []
        for raw_segment in raw_line.split(","):
            if not raw_segment:
                continue
            fields = decode_vlq(raw_segment)
            generated_column += fields[0]
            if len(fields) < _SEGMENT_WITH_SOURCE:
                segments.append((generated_column, -1, 0, 0))
                continue
            source_index += fields[1]
            orig_line += fields[2]
            orig_column += fields[3]
            if not 0 <= source_index < source_count:
                raise SourceMapError(f"Mapping references unknown source index {source_index}")
            segments.append((generated_column, source_index, orig_line, orig_column))
        segments.sort(key=lambda segment: segment[0])
        lines.append(segments)
    return lines


def load_source_map(path: str, file_data: dict[str, Any]) -> SourceMap | None:
    """Find the source map for one covered file.

    Uses the ``inputSourceMap`` embedded by the instrumenter, then a sibling
    ``<file>.map`` on disk.

    Raises:
        SourceMapError: If a map exists but cannot be parsed.
    """
    base_dir = os.path.dirname(path)
    embedded = file_data.get("inputSourceMap")
    if embedded:
        return SourceMap.from_json(embedded, base_dir=base_dir)

    map_file = Path(f"{path}.map")
    if map_file.is_file():
        try:
            text = map_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise SourceMapError(f"Cannot read {map_file}: {exc}") from exc
        return SourceMap.from_json(text, base_dir=base_dir)
    return None


# ── Coverage remapping ───────────────────────────────────────────


def _loc_key(loc: dict[str, Any]) -> str:
    start = loc.get("start") or {}
    end = loc.get("end") or {}
    return f"{start.get('line')}:{start.get('column')}:{end.get('line')}:{end.get('column')}"


def _position_try_both(source_map: SourceMap, line: Any, column: Any) -> OriginalPosition | None:
    if not isinstance(line, int) or not isinstance(column, int):
        return None
    position = source_map.original_position_for(line, column)
    if position is None:
        position = source_map.original_position_for(line, column, bias=Bias.LEAST_UPPER_BOUND)
    return position


def _map_location(
    source_map: SourceMap, loc: dict[str, Any] | None
) -> tuple[str, dict[str, Any]] | None:
    """Map a generated ``{start, end}`` range to ``(source, original range)``."""
    if not isinstance(loc, dict):
        return None
    start = loc.get("start") or {}
    end = loc.get("end") or {}
    start_pos = _position_try_both(source_map, start.get("line"), start.get("column"))
    if start_pos is None:
        return None

    end_column = end.get("column")
    if isinstance(end_column, int):
        # End columns are exclusive
        end_pos = _position_try_both(source_map, end.get("line"), max(end_column - 1, 0))
    else:
        end_pos = start_pos
    if end_pos is None or end_pos.source != start_pos.source:
        return None

    return start_pos.source, {
        "start": {"line": start_pos.line, "column": start_pos.column},
        "end": {"line": end_pos.line, "column": end_pos.column},
    }


class _FileBuilder:
    """Accumulates coverage items for one output file, merging duplicates by location."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.statement_map: dict[str, Any] = {}
        self.s: dict[str, int] = {}
        self.fn_map: dict[str, Any] = {}
        self.f: dict[str, int] = {}
        self.branch_map: dict[str, Any] = {}
        self.b: dict[str, list[int]] = {}
        self.l: dict[str, int] = {}
        self._keys: dict[str, str] = {}

    def _index_for(self, key: str, table: dict[str, Any]) -> tuple[str, bool]:
        existing = self._keys.get(key)
        if existing is not None:
            return existing, False
        index = str(len(table))
        self._keys[key] = index
        return index, True

    def add_statement(self, loc: dict[str, Any], hits: int, *, skip: bool = False) -> None:
        index, created = self._index_for("s:" + _loc_key(loc), self.statement_map)
        if created:
            entry = dict(loc)
            if skip:
                entry["skip"] = True
            self.statement_map[index] = entry
            self.s[index] = 0
        self.s[index] += hits

    def add_function(self, meta: dict[str, Any], hits: int) -> None:
        index, created = self._index_for("f:" + _loc_key(meta["decl"]), self.fn_map)
        if created:
            self.fn_map[index] = meta
            self.f[index] = 0
        self.f[index] += hits

    def add_branch(self, meta: dict[str, Any], hits: list[int]) -> None:
        key = "b:" + "|".join(_loc_key(loc) for loc in meta["locations"])
        index, created = self._index_for(key, self.branch_map)
        if created:
            self.branch_map[index] = meta
            self.b[index] = [0] * len(hits)
        counts = self.b[index]
        if len(counts) < len(hits):
            counts.extend([0] * (len(hits) - len(counts)))
        for arm, arm_hits in enumerate(hits):
            counts[arm] += arm_hits

    def absorb(self, file_data: dict[str, Any]) -> None:
        """Add every item of an unmapped file at its own location."""
        statement_map = file_data.get("statementMap") or {}
        for stmt_id, hits in (file_data.get("s") or {}).items():
            loc = statement_map.get(stmt_id)
            if isinstance(loc, dict):
                self.add_statement(loc, int(hits), skip=bool(loc.get("skip")))
        fn_map = file_data.get("fnMap") or {}
        for fn_id, hits in (file_data.get("f") or {}).items():
            meta = fn_map.get(fn_id)
            if isinstance(meta, dict):
                decl = meta.get("decl") or meta.get("loc") or {}
                self.add_function({**meta, "decl": decl}, int(hits))
        branch_map = file_data.get("branchMap") or {}
        for branch_id, hits in (file_data.get("b") or {}).items():
            meta = branch_map.get(branch_id)
            if isinstance(meta, dict) and isinstance(hits, list):
                self.add_branch(
                    {**meta, "locations": meta.get("locations") or []}, [int(h) for h in hits]
                )
        for line, hits in (file_data.get("l") or {}).items():
            self.l[line] = max(self.l.get(line, 0), int(hits))

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "path": self.path,
            "statementMap": self.statement_map,
            "fnMap": self.fn_map,
            "branchMap": self.branch_map,
            "s": self.s,
            "f": self.f,
            "b": self.b,
        }
        if self.l:
            data["l"] = self.l
        return data


def _remap_file(
    file_data: dict[str, Any], source_map: SourceMap
) -> dict[str, _FileBuilder]:
    """Remap one generated file; returns builders keyed by original source."""
    builders: dict[str, _FileBuilder] = {}

    def builder_for(source: str) -> _FileBuilder:
        if source not in builders:
            builders[source] = _FileBuilder(source)
        return builders[source]

    statement_map = file_data.get("statementMap") or {}
    for stmt_id, hits in (file_data.get("s") or {}).items():
        loc = statement_map.get(stmt_id)
        mapped = _map_location(source_map, loc)
        if mapped is None:
            continue
        source, new_loc = mapped
        builder_for(source).add_statement(new_loc, int(hits), skip=bool(loc.get("skip")))

    fn_map = file_data.get("fnMap") or {}
    for fn_id, hits in (file_data.get("f") or {}).items():
        meta = fn_map.get(fn_id)
        if not isinstance(meta, dict):
            continue
        decl = _map_location(source_map, meta.get("decl") or meta.get("loc"))
        loc = _map_location(source_map, meta.get("loc"))
        if decl is None or loc is None or decl[0] != loc[0]:
            continue
        builder_for(decl[0]).add_function(
            {"name": meta.get("name", f"anonymous_{fn_id}"), "decl": decl[1], "loc": loc[1]},
            int(hits),
        )

    branch_map = file_data.get("branchMap") or {}
    for branch_id, hits in (file_data.get("b") or {}).items():
        meta = branch_map.get(branch_id)
        if not isinstance(meta, dict) or not isinstance(hits, list):
            continue
        raw_locations = meta.get("locations") or []
        locations = [
            mapped
            for mapped in (_map_location(source_map, loc) for loc in raw_locations)
            if mapped is not None
        ]
        # A branch is kept only if every arm maps into the same source
        if not locations or len(locations) != len(raw_locations):
            continue
        sources = {source for source, _ in locations}
        if len(sources) != 1:
            continue
        source = sources.pop()
        branch_loc = _map_location(source_map, meta.get("loc"))
        if branch_loc is None or branch_loc[0] != source:
            branch_loc = locations[0]
        builder_for(source).add_branch(
            {
                "type": meta.get("type", "branch"),
                "loc": branch_loc[1],
                "locations": [loc for _, loc in locations],
            },
            [int(h) for h in hits],
        )

    return builders


def remap_coverage(data: dict[str, Any]) -> dict[str, Any]:
    """Remap raw Istanbul coverage data onto original sources.

    Args:
        data: Mapping of file path to Istanbul file coverage.

    Returns:
        New coverage mapping keyed by the remapped paths. Files that cannot
        be remapped keep their bundled path and locations.
    """
    builders: dict[str, _FileBuilder] = {}

    def builder_for(path: str) -> _FileBuilder:
        if path not in builders:
            builders[path] = _FileBuilder(path)
        return builders[path]

    for key, file_data in data.items():
        path = str(file_data.get("path") or key)
        try:
            source_map = load_source_map(path, file_data)
        except SourceMapError as exc:
            logger.debug("Keeping bundled locations for %s: %s", path, exc)
            source_map = None

        remapped: dict[str, _FileBuilder] = {}
        if source_map is not None:
            remapped = _remap_file(file_data, source_map)
            if not remapped:
                logger.debug("No locations in %s could be remapped", path)

        if not remapped:
            builder_for(path).absorb(file_data)
            continue

        for source, partial in remapped.items():
            target = builder_for(source)
            target.absorb(partial.to_json())

    return {path: builder.to_json() for path, builder in builders.items()}
