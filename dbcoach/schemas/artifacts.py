"""Schemas for structured views derived from generated text."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SubSection(BaseModel):
    """A named sub-section of a phase's text, delimited by a level-2 heading."""

    id: str
    title: str
    body: str
    icon: str = "FileText"


class Column(BaseModel):
    """A column definition extracted from a CREATE TABLE body."""

    name: str
    type: str
    is_primary_key: bool = False
    is_foreign_key: bool = False
    is_required: bool = False
    is_unique: bool = False
    references_table: str | None = None
    references_column: str | None = None


class Table(BaseModel):
    """A table definition extracted from design-phase text."""

    name: str
    columns: list[Column] = Field(default_factory=list)

    @property
    def primary_keys(self) -> list[Column]:
        return [c for c in self.columns if c.is_primary_key]

    @property
    def foreign_keys(self) -> list[Column]:
        return [c for c in self.columns if c.is_foreign_key]


class Relationship(BaseModel):
    """A foreign-key relationship between two extracted tables."""

    from_table: str
    from_column: str
    to_table: str
    to_column: str
    type: str = "many-to-one"


class SchemaStats(BaseModel):
    """Aggregate statistics over an extracted schema."""

    table_count: int = 0
    column_count: int = 0
    primary_key_count: int = 0
    foreign_key_count: int = 0
    required_column_count: int = 0
    relationship_count: int = 0
    avg_columns_per_table: float = 0.0


class ContentMetric(BaseModel):
    """A single labelled count derived from phase content."""

    label: str
    value: int
