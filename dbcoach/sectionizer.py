"""Derived views over generated phase text.

Pure functions that split a phase's Markdown into sub-sections, pull table
definitions out of CREATE TABLE statements, and compute relationships,
statistics, an ER diagram and content metrics from them. Malformed input
produces omissions, never exceptions.
"""

from __future__ import annotations

import re

from dbcoach.schemas.artifacts import (
    Column,
    ContentMetric,
    Relationship,
    SchemaStats,
    SubSection,
    Table,
)

# ── Sub-sections ─────────────────────────────────────────────────

_HEADING_SPLIT = re.compile(r"^## ", re.MULTILINE)

# Checked in order against the lowercased section title
_ICON_HINTS: list[tuple[tuple[str, ...], str]] = [
    (("business", "domain"), "Building2"),
    (("requirement", "specification"), "FileText"),
    (("table", "schema"), "Database"),
    (("index", "performance"), "Zap"),
    (("migration", "script"), "Code"),
    (("api", "endpoint"), "Globe"),
    (("sample", "data"), "Package"),
    (("security", "validation"), "Shield"),
    (("optimization",), "TrendingUp"),
]
_DEFAULT_ICON = "FileText"


def icon_for(title: str) -> str:
    lowered = title.lower()
    for keywords, icon in _ICON_HINTS:
        if any(k in lowered for k in keywords):
            return icon
    return _DEFAULT_ICON


def _slug(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", title.lower()).strip("_")
    return slug or "section"


def split_sections(text: str) -> list[SubSection]:
    """Split text on lines beginning with ``## ``.

    Text before the first heading is discarded. Fewer than two sections
    means the text is not worth splitting, and ``[]`` is returned.
    """
    parts = _HEADING_SPLIT.split(text)[1:]
    if len(parts) < 2:
        return []

    sections: list[SubSection] = []
    seen: dict[str, int] = {}
    for part in parts:
        title, _, body = part.partition("\n")
        title = title.strip()
        base = _slug(title)
        seen[base] = seen.get(base, 0) + 1
        section_id = base if seen[base] == 1 else f"{base}_{seen[base]}"
        sections.append(
            SubSection(id=section_id, title=title, body=body.strip(), icon=icon_for(title))
        )
    return sections


# ── Tables ───────────────────────────────────────────────────────

_CREATE_TABLE = re.compile(
    r"CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?[`\"\[]?(\w+)[`\"\]]?\s*\((.*?)\);",
    re.IGNORECASE | re.DOTALL,
)
_REFERENCES = re.compile(
    r"REFERENCES\s+[`\"\[]?(\w+)[`\"\]]?(?:\s*\(\s*[`\"\[]?(\w+)[`\"\]]?\s*\))?",
    re.IGNORECASE,
)
_TABLE_PRIMARY_KEY = re.compile(r"^PRIMARY\s+KEY\s*\(([^)]*)\)", re.IGNORECASE)
_TABLE_FOREIGN_KEY = re.compile(r"FOREIGN\s+KEY\s*\(([^)]*)\)", re.IGNORECASE)
_TABLE_CONSTRAINT = re.compile(
    r"^(?:CONSTRAINT|FOREIGN\s+KEY|PRIMARY\s+KEY|UNIQUE|CHECK|INDEX|KEY)\b", re.IGNORECASE,
)


def _split_top_level(body: str) -> list[str]:
    """Split a column list on commas outside parentheses."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in body:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(depth - 1, 0)
        if ch == "," and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return [p.strip() for p in parts if p.strip()]


def _strip_comments(body: str) -> str:
    return re.sub(r"--[^\n]*", "", body)


def _names(column_list: str) -> list[str]:
    return [n.strip().strip('`"[]') for n in column_list.split(",") if n.strip()]


def _parse_column(definition: str) -> Column | None:
    tokens = definition.split()
    if len(tokens) < 2:
        return None
    name = tokens[0].strip('`"[]')
    if not re.fullmatch(r"\w+", name):
        return None
    upper = " ".join(tokens).upper()

    is_pk = "PRIMARY KEY" in upper
    ref = _REFERENCES.search(definition)
    return Column(
        name=name,
        type=tokens[1],
        is_primary_key=is_pk,
        is_foreign_key=ref is not None,
        is_required=is_pk or "NOT NULL" in upper,
        is_unique="UNIQUE" in upper,
        references_table=ref.group(1) if ref else None,
        references_column=(ref.group(2) or "id") if ref else None,
    )


def _apply_constraint(definition: str, columns: dict[str, Column]) -> None:
    """Fold a table-level PRIMARY KEY / FOREIGN KEY clause into its columns."""
    pk = _TABLE_PRIMARY_KEY.search(definition)
    if pk:
        for name in _names(pk.group(1)):
            if name in columns:
                columns[name].is_primary_key = True
                columns[name].is_required = True
        return

    fk = _TABLE_FOREIGN_KEY.search(definition)
    ref = _REFERENCES.search(definition)
    if fk and ref:
        for name in _names(fk.group(1))[:1]:
            if name in columns:
                col = columns[name]
                col.is_foreign_key = True
                col.references_table = ref.group(1)
                col.references_column = ref.group(2) or "id"


def extract_tables(text: str) -> list[Table]:
    """Extract table definitions from ``CREATE TABLE name (...);`` statements."""
    tables: list[Table] = []
    for match in _CREATE_TABLE.finditer(text):
        name, body = match.group(1), _strip_comments(match.group(2))
        columns: dict[str, Column] = {}
        constraints: list[str] = []
        for definition in _split_top_level(body):
            if _TABLE_CONSTRAINT.match(definition):
                constraints.append(definition)
                continue
            column = _parse_column(definition)
            if column is not None and column.name not in columns:
                columns[column.name] = column
        for definition in constraints:
            _apply_constraint(definition, columns)
        tables.append(Table(name=name, columns=list(columns.values())))
    return tables


# ── Relationships and statistics ─────────────────────────────────


def extract_relationships(tables: list[Table]) -> list[Relationship]:
    """One relationship per foreign-key column.

    A foreign key that is also unique is one-to-one, otherwise many-to-one.
    """
    relationships: list[Relationship] = []
    for table in tables:
        for col in table.foreign_keys:
            relationships.append(
                Relationship(
                    from_table=table.name,
                    from_column=col.name,
                    to_table=col.references_table or "",
                    to_column=col.references_column or "id",
                    type="one-to-one" if col.is_unique else "many-to-one",
                )
            )
    return relationships


def schema_stats(tables: list[Table]) -> SchemaStats:
    column_count = sum(len(t.columns) for t in tables)
    return SchemaStats(
        table_count=len(tables),
        column_count=column_count,
        primary_key_count=sum(len(t.primary_keys) for t in tables),
        foreign_key_count=sum(len(t.foreign_keys) for t in tables),
        required_column_count=sum(1 for t in tables for c in t.columns if c.is_required),
        relationship_count=len(extract_relationships(tables)),
        avg_columns_per_table=round(column_count / len(tables), 2) if tables else 0.0,
    )


def er_summary(tables: list[Table]) -> str:
    """Render the tables and their foreign keys as a Mermaid ``erDiagram``."""
    lines = ["erDiagram"]
    for table in tables:
        lines.append(f"    {table.name.upper()} {{")
        for col in table.columns:
            key = " PK" if col.is_primary_key else " FK" if col.is_foreign_key else ""
            col_type = re.sub(r"\W", "_", col.type).strip("_") or "unknown"
            lines.append(f"        {col_type} {col.name}{key}")
        lines.append("    }")
    for rel in extract_relationships(tables):
        marker = "||--||" if rel.type == "one-to-one" else "||--o{"
        lines.append(
            f'    {rel.to_table.upper()} {marker} {rel.from_table.upper()} : "{rel.from_column}"'
        )
    return "\n".join(lines) + "\n"


# ── Content metrics ──────────────────────────────────────────────

_CREATE_TABLE_COUNT = re.compile(r"CREATE\s+TABLE", re.IGNORECASE)
_CHECK_MARKERS = re.compile(r"✓|✅|\bcheck\b|\bvalid\b", re.IGNORECASE)
_RELATIONSHIP_MARKERS = re.compile(r"foreign key|references|relationship", re.IGNORECASE)


def content_metrics(contents: dict[str, str]) -> list[ContentMetric]:
    """Headline counts over phase contents keyed by phase key.

    Expects the default phase keys (analysis, design, implementation,
    validation); missing phases count as empty text.
    """
    analysis = contents.get("analysis", "")
    design = contents.get("design", "")
    implementation = contents.get("implementation", "")
    validation = contents.get("validation", "")
    return [
        ContentMetric(label="Analysis words", value=len(analysis.split())),
        ContentMetric(label="Tables designed", value=len(_CREATE_TABLE_COUNT.findall(design))),
        ContentMetric(
            label="Implementation statements",
            value=len(re.findall(r";\s*(?:\n|$)", implementation)),
        ),
        ContentMetric(label="Validation checks", value=len(_CHECK_MARKERS.findall(validation))),
        ContentMetric(
            label="Relationships",
            value=len(_RELATIONSHIP_MARKERS.findall(design)),
        ),
    ]
