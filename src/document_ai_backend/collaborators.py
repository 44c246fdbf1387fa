"""
Contracts for the external extraction and export engines.

The worker only depends on these protocols. Concrete engines are wired in
by dotted path from configuration (``module:attribute``), where the
attribute is either an instance or a zero-argument factory.
"""

from __future__ import annotations

import csv
import importlib
import io
from typing import Any, Dict, List, Protocol, Union, runtime_checkable

from .errors import ExportError
from .models import DocumentCategory

StructuredData = Union[Dict[str, Any], List[Dict[str, Any]]]


@runtime_checkable
class Extractor(Protocol):
    def extract(self, data: bytes, category: DocumentCategory) -> StructuredData:
        """Return structured fields, or raise ExtractionError."""
        ...


@runtime_checkable
class Exporter(Protocol):
    extension: str
    content_type: str

    def render(self, data: StructuredData) -> bytes:
        """Return the result artifact, or raise ExportError."""
        ...


class CsvExporter:
    """Render a mapping or a list of mappings as a UTF-8 CSV file."""

    extension = "csv"
    content_type = "text/csv"

    def render(self, data: StructuredData) -> bytes:
        rows = [data] if isinstance(data, dict) else list(data)
        if not rows or not all(isinstance(row, dict) for row in rows):
            raise ExportError("Expected a non-empty list of field mappings")

        columns: List[str] = []
        for row in rows:
            columns.extend(key for key in row if key not in columns)

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=columns, lineterminator="\n")
        writer.writeheader()
        writer.writerows(rows)
        return buffer.getvalue().encode("utf-8")


def load_collaborator(path: str):
    """
    Import ``module:attribute`` and return the collaborator instance.

    Raises:
        ValueError: If the path is malformed or the attribute is missing
    """
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Expected 'module:attribute', got {path!r}")
    module = importlib.import_module(module_name)
    try:
        target = getattr(module, attribute)
    except AttributeError:
        raise ValueError(f"{module_name} has no attribute {attribute!r}") from None
    if isinstance(target, type):
        return target()
    if hasattr(target, "extract") or hasattr(target, "render"):
        return target
    return target()
