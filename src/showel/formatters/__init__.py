"""Output formatters for showel."""

from showel.formatters.base import Formatter, FormatterRegistry, registry
from showel.formatters.csv import CSVFormatter
from showel.formatters.json import JSONFormatter, JSONMetaFormatter
from showel.formatters.sql import SQLInsertFormatter
from showel.formatters.table import TableFormatter

__all__ = [
    "CSVFormatter",
    "Formatter",
    "FormatterRegistry",
    "JSONFormatter",
    "JSONMetaFormatter",
    "SQLInsertFormatter",
    "TableFormatter",
    "registry",
]
