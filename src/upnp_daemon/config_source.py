"""
Rule source: reads the port mapping file into rule records.

The file is a ``;``-separated table with a mandatory header line::

    address;port;protocol;duration;comment
    192.168.0.10;12345;UDP;60;Test 1
    ;12346;TCP;60;Test 2

It is re-read on every cycle, so edits take effect on the next cycle.
"""
import csv
import io
from collections import Counter
from dataclasses import dataclass, field
from typing import List, Dict, Optional

import aiofiles
import structlog

from upnp_daemon.errors import ConfigLoadError
from upnp_daemon.rules import PortMappingRule, Protocol, parse_ipv4


REQUIRED_COLUMNS = ("address", "port", "protocol", "duration", "comment")
DELIMITER = ";"


@dataclass(frozen=True)
class RejectedRow:
    """A row excluded from the rule set, with the reason."""
    line_number: int
    reason: str
    raw: Dict[str, Optional[str]] = field(default_factory=dict)


@dataclass
class LoadResult:
    """Outcome of loading the rule file once."""
    rules: List[PortMappingRule] = field(default_factory=list)
    rejected: List[RejectedRow] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.rejected


def _required(row: Dict[str, Optional[str]], column: str) -> str:
    value = row.get(column)
    if value is None or not value.strip():
        raise ValueError(f"Missing value for column '{column}'")
    return value.strip()


def _parse_int(row: Dict[str, Optional[str]], column: str) -> int:
    value = _required(row, column)
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Column '{column}' is not an integer: {value!r}") from None


def parse_row(row: Dict[str, Optional[str]]) -> PortMappingRule:
    """
    Convert one table row into a rule.

    Args:
        row: Mapping of column name to raw cell text

    Returns:
        The validated rule

    Raises:
        ValueError: If any cell is missing or invalid
    """
    if None in row:
        raise ValueError("Row has more cells than the header")

    address = (row.get("address") or "").strip()

    return PortMappingRule(
        external_port=_parse_int(row, "port"),
        protocol=Protocol.parse(_required(row, "protocol")),
        lease_seconds=_parse_int(row, "duration"),
        comment=row.get("comment") or "",
        address=parse_ipv4(address) if address else None,
    )


def parse_rules(text: str, source: str = "<string>") -> LoadResult:
    """
    Parse the contents of a rule file.

    Args:
        text: Full file contents
        source: Name used in error messages

    Returns:
        LoadResult with accepted rules and rejected rows

    Raises:
        ConfigLoadError: If the header is missing, malformed or lacks required
            columns, or the table cannot be read past a malformed row
    """
    reader = csv.DictReader(io.StringIO(text), delimiter=DELIMITER)
    try:
        header = [name.strip() for name in (reader.fieldnames or [])]
    except csv.Error as e:
        raise ConfigLoadError(f"{source}: malformed header line: {e}", path=source) from e
    if not header:
        raise ConfigLoadError(f"{source}: missing header line", path=source)

    missing = [column for column in REQUIRED_COLUMNS if column not in header]
    if missing:
        raise ConfigLoadError(
            f"{source}: header lacks required columns: {', '.join(missing)}",
            path=source,
        )
    reader.fieldnames = header

    result = LoadResult()
    rows = iter(reader)
    while True:
        line_before = reader.reader.line_num
        try:
            row = next(rows)
        except StopIteration:
            break
        except csv.Error as e:
            # The reader drops the rest of the offending line and resumes after it
            if reader.reader.line_num == line_before:
                raise ConfigLoadError(f"{source}: unreadable table: {e}", path=source) from e
            result.rejected.append(RejectedRow(line_number=reader.reader.line_num, reason=f"Malformed row: {e}"))
            continue

        if not any((value or "").strip() for key, value in row.items() if key is not None):
            continue
        try:
            result.rules.append(parse_row(row))
        except ValueError as e:
            result.rejected.append(RejectedRow(line_number=reader.line_num, reason=str(e), raw=dict(row)))

    return result


class RuleSource:
    """Loads the rule file from disk on demand."""

    def __init__(self, path: str, encoding: str = "utf-8"):
        """
        Initialize rule source.

        Args:
            path: Path to the ``;``-separated rule file
            encoding: File encoding
        """
        self.path = path
        self.encoding = encoding
        self.logger = structlog.get_logger()

    async def load(self) -> LoadResult:
        """
        Read and parse the rule file.

        Rejected rows are logged and excluded; only an unreadable or
        structurally broken file raises.

        Raises:
            ConfigLoadError: If the file cannot be read or has no usable header
        """
        try:
            async with aiofiles.open(self.path, "r", encoding=self.encoding, newline="") as f:
                text = await f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigLoadError(f"Cannot read rule file {self.path}: {e}", path=self.path) from e

        result = parse_rules(text, source=self.path)

        for rejected in result.rejected:
            self.logger.warning(
                "row_rejected",
                path=self.path,
                line=rejected.line_number,
                reason=rejected.reason,
            )

        duplicates = Counter(rule.identity for rule in result.rules)
        for (port, protocol), count in duplicates.items():
            if count > 1:
                self.logger.warning(
                    "duplicate_rule_identity",
                    port=port,
                    protocol=protocol.value,
                    occurrences=count,
                )

        self.logger.debug(
            "rules_loaded",
            path=self.path,
            accepted=len(result.rules),
            rejected=len(result.rejected),
        )
        return result
