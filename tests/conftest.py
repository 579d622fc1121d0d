"""Shared test fixtures."""

from pathlib import Path

# Test fixture config directory with synthetic data
FIXTURE_CONFIG_DIR = Path(__file__).parent / "fixtures" / "config"


def _split_a1(label: str) -> tuple[int, int]:
    """'I5' → (4, 8): 0-indexed row and column."""
    letters = "".join(ch for ch in label if ch.isalpha())
    digits = label[len(letters):]
    col = 0
    for ch in letters:
        col = col * 26 + (ord(ch) - 64)
    return int(digits) - 1, col - 1


class FakeWorksheet:
    """In-memory stand-in for a gspread Worksheet.

    Supports the calls pull and push make: get_all_values, update,
    batch_update and append_rows. Every write call is recorded.
    """

    def __init__(self, grid: list[list] | None = None):
        self.grid = [list(r) for r in (grid or [])]
        self.calls: list[tuple[str, object]] = []

    def get_all_values(self) -> list[list]:
        return [[("" if v is None else str(v)) for v in r] for r in self.grid]

    def _write_range(self, range_name: str, values: list[list]):
        start = range_name.split(":")[0]
        row, col = _split_a1(start)
        for r_offset, row_values in enumerate(values):
            while len(self.grid) <= row + r_offset:
                self.grid.append([])
            target = self.grid[row + r_offset]
            for c_offset, value in enumerate(row_values):
                while len(target) <= col + c_offset:
                    target.append("")
                target[col + c_offset] = value

    def update(self, range_name: str, values: list[list], **kwargs):
        self.calls.append(("update", range_name))
        self._write_range(range_name, values)

    def batch_update(self, data: list[dict], **kwargs):
        self.calls.append(("batch_update", data))
        for entry in data:
            self._write_range(entry["range"], entry["values"])

    def append_rows(self, values: list[list], **kwargs):
        self.calls.append(("append_rows", values))
        self.grid.extend(list(r) for r in values)
