import re
from collections import deque
from typing import Optional

# geth pretty-prints large numbers with commas, e.g. number=19,000,123
NUMBER_RE = re.compile(r"\bnumber=([\d,]+)")
IMPORT_MARKERS = ("Imported new chain segment", "Imported new potential chain segment")


class LogBuffer:
    """Keeps the most recent output lines of the node process."""

    def __init__(self, max_lines: int = 200) -> None:
        self.max_lines = max_lines
        self._lines: deque[str] = deque(maxlen=max_lines)

    def append(self, line: str) -> None:
        self._lines.append(line)

    def clear(self) -> None:
        self._lines.clear()

    def __len__(self) -> int:
        return len(self._lines)

    def tail_lines(self, limit: Optional[int] = None) -> list[str]:
        lines = list(self._lines)
        if limit is not None:
            return lines[-limit:] if limit > 0 else []
        return lines

    def latest_imported_block(self) -> Optional[int]:
        """Block number from the newest chain-segment import line, if any."""
        for line in reversed(self._lines):
            if not any(marker in line for marker in IMPORT_MARKERS):
                continue
            match = NUMBER_RE.search(line)
            if match:
                return int(match.group(1).replace(",", ""))
        return None
