from __future__ import annotations

import datetime
import logging
import sys
from typing import Optional


def eprint(*args, **kwargs) -> None:
    print(*args, file=sys.stderr, **kwargs)


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # urllib3 logs every connection at DEBUG, including request lines
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def format_epoch_ms(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    try:
        dt = datetime.datetime.fromtimestamp(value / 1000.0, datetime.timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return dt.isoformat().replace("+00:00", "Z")
