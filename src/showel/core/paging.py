"""Client-side view state for paging through a table.

TablePager holds no connection. It decides which LoadTableData command
to send next and folds the matching TableData responses back into its
rows. Two modes exist and a table session uses exactly one of them:

SCROLL  pages are appended as the user scrolls until total_rows is reached.
PAGED   one page is shown at a time and navigated by index.

Ordering and filtering happen on the server, so any change to sort,
filter, page size or table throws away what is loaded and starts again
from offset 0.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from enum import StrEnum

import structlog

from showel.core.bridge import (
    ColumnTypes,
    Command,
    ErrorResponse,
    ListColumnTypes,
    LoadTableData,
    Response,
    TableData,
)
from showel.core.config import DEFAULT_PAGE_SIZE
from showel.core.models import ColumnType

PAGE_SIZES = (50, 100, 200)


class PaginationMode(StrEnum):
    SCROLL = "scroll"
    PAGED = "paged"


class TablePager:
    def __init__(
        self,
        submit: Callable[[Command], None],
        page_size: int = DEFAULT_PAGE_SIZE,
        mode: PaginationMode = PaginationMode.SCROLL,
    ) -> None:
        if page_size < 1:
            msg = f"page_size must be positive, got {page_size}"
            raise ValueError(msg)
        self._submit = submit
        self.page_size = page_size
        self.mode = mode
        self.schema: str | None = None
        self.table: str | None = None
        self.sort_column: str | None = None
        self.ascending = True
        self.filter: str | None = None
        self.column_types: list[ColumnType] = []
        self.error: str | None = None
        self._clear_rows()

    def _clear_rows(self) -> None:
        self.columns: list[str] = []
        self.rows: list[list[str]] = []
        self.loaded_rows = 0
        self.total_rows: int | None = None
        self.current_page = 0
        self.pending: LoadTableData | None = None

    # -- Derived state --

    @property
    def is_loading(self) -> bool:
        return self.pending is not None

    @property
    def exhausted(self) -> bool:
        """True once the server has no rows beyond those loaded."""
        return self.total_rows is not None and self.loaded_rows >= self.total_rows

    @property
    def total_pages(self) -> int | None:
        if self.total_rows is None:
            return None
        return max(1, math.ceil(self.total_rows / self.page_size))

    # -- Requests --

    def _request(self, offset: int) -> LoadTableData:
        if self.schema is None or self.table is None:
            msg = "No table selected"
            raise ValueError(msg)
        request = LoadTableData(
            schema=self.schema,
            table=self.table,
            limit=self.page_size,
            offset=offset,
            sort_column=self.sort_column,
            ascending=self.ascending,
            raw_filter=self.filter,
        )
        self.pending = request
        self.error = None
        structlog.get_logger().debug(
            "requesting page",
            table=f"{self.schema}.{self.table}",
            offset=offset,
            limit=self.page_size,
        )
        self._submit(request)
        return request

    def _restart(self) -> None:
        """Drop loaded rows and request the first page with current settings."""
        if self.table is None:
            return
        self._clear_rows()
        self._request(0)

    def load_table(
        self, schema: str, table: str, mode: PaginationMode | None = None
    ) -> None:
        """Start a new table session: column types once, then the first page."""
        self.schema = schema
        self.table = table
        if mode is not None:
            self.mode = mode
        self.column_types = []
        self._submit(ListColumnTypes(schema, table))
        self._restart()

    def load_more(self) -> bool:
        """Request the next page in scroll mode. Returns False when there is nothing to do."""
        if self.mode is not PaginationMode.SCROLL:
            msg = "load_more is only available in scroll mode"
            raise ValueError(msg)
        if self.table is None or self.pending is not None or self.exhausted:
            return False
        self._request(self.loaded_rows)
        return True

    def go_to_page(self, page: int) -> bool:
        if self.mode is not PaginationMode.PAGED:
            msg = "go_to_page is only available in paged mode"
            raise ValueError(msg)
        if self.table is None or page < 0:
            return False
        total_pages = self.total_pages
        if total_pages is not None and page >= total_pages:
            return False
        self.current_page = page
        self._request(page * self.page_size)
        return True

    def next_page(self) -> bool:
        return self.go_to_page(self.current_page + 1)

    def previous_page(self) -> bool:
        if self.current_page == 0:
            return False
        return self.go_to_page(self.current_page - 1)

    def set_mode(self, mode: PaginationMode) -> None:
        if mode is self.mode:
            return
        self.mode = mode
        self._restart()

    def set_sort(self, column: str | None, ascending: bool = True) -> None:
        self.sort_column = column
        self.ascending = ascending
        self._restart()

    def toggle_sort(self, column: str) -> None:
        """Same column flips direction; a new column sorts ascending."""
        if self.sort_column == column:
            self.set_sort(column, not self.ascending)
        else:
            self.set_sort(column, True)

    def clear_sort(self) -> None:
        self.set_sort(None, True)

    def set_filter(self, expression: str | None) -> None:
        if expression is not None and not expression.strip():
            expression = None
        self.filter = expression
        self._restart()

    def set_page_size(self, page_size: int) -> None:
        if page_size < 1:
            msg = f"page_size must be positive, got {page_size}"
            raise ValueError(msg)
        self.page_size = page_size
        self._restart()

    def reload(self) -> None:
        """Re-fetch from the server, keeping the current page in paged mode."""
        if self.table is None:
            return
        if self.mode is PaginationMode.PAGED:
            page = self.current_page
            self._clear_rows()
            self.current_page = page
            self._request(page * self.page_size)
        else:
            self._restart()

    # -- Responses --

    def apply(self, response: Response) -> bool:
        """Fold a response into the view. Returns True if it was consumed."""
        if isinstance(response, TableData):
            return self._apply_page(response)
        if isinstance(response, ColumnTypes):
            if (response.schema, response.table) != (self.schema, self.table):
                return False
            self.column_types = list(response.columns)
            return True
        if isinstance(response, ErrorResponse):
            if self.pending is None or response.command is not self.pending:
                return False
            self.pending = None
            self.error = response.message
            return True
        return False

    def _apply_page(self, response: TableData) -> bool:
        if self.pending is None or response.request is not self.pending:
            structlog.get_logger().debug(
                "ignoring stale page",
                offset=response.request.offset,
                table=f"{response.request.schema}.{response.request.table}",
            )
            return False

        self.pending = None
        result = response.result
        if self.mode is PaginationMode.SCROLL:
            if response.request.offset == 0:
                self.columns = list(result.columns)
            self.rows.extend(result.rows)
            self.loaded_rows += len(result.rows)
            self.total_rows = response.total_count
            if len(result.rows) < response.request.limit:
                # Short page: the end of the table, whatever the count said.
                self.total_rows = self.loaded_rows
        else:
            self.columns = list(result.columns)
            self.rows = list(result.rows)
            self.loaded_rows = len(result.rows)
            self.total_rows = response.total_count
        return True
