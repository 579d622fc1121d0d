"""YAML configuration loader for ledgermatch.

Reads optional config files from the config/ directory:
  matching.yaml  reconciliation windows, weights, and per-pass cap
  sheets.yaml    spreadsheet tab name and write batching/quota

A missing file means built-in defaults; a present but empty or invalid
file is an error.
"""

from __future__ import annotations

from pathlib import Path

import yaml

from ledgermatch.reconcile.scoring import MatchThresholds
from ledgermatch.sheets.layout import ALL_TRANSACTIONS_TAB

_SHEETS_DEFAULTS = {
    "tab_name": ALL_TRANSACTIONS_TAB,
    "write_chunk_size": 200,
    "max_writes_per_minute": 50,
}


class Config:
    """Loads and provides access to the YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._matching: dict | None = None
        self._sheets: dict | None = None

    def _load(self, filename: str) -> dict:
        path = self.config_dir / filename
        if not path.exists():
            return {}
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        if not isinstance(data, dict):
            raise ValueError(f"Expected a mapping in {path}, got {type(data).__name__}")
        return data

    @property
    def matching(self) -> dict:
        if self._matching is None:
            self._matching = self._load("matching.yaml")
        return self._matching

    @property
    def sheets(self) -> dict:
        if self._sheets is None:
            self._sheets = {**_SHEETS_DEFAULTS, **self._load("sheets.yaml")}
        return self._sheets

    @property
    def match_thresholds(self) -> MatchThresholds:
        """Thresholds from matching.yaml over the defaults.

        Raises:
            ValueError: On unknown keys.
        """
        return MatchThresholds.from_dict(self.matching)

    @property
    def tab_name(self) -> str:
        return self.sheets["tab_name"]

    @property
    def write_chunk_size(self) -> int:
        return int(self.sheets["write_chunk_size"])

    @property
    def max_writes_per_minute(self) -> int:
        return int(self.sheets["max_writes_per_minute"])
