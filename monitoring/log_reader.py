import logging
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Union

from errors import ValidationError
from monitoring.logging_utils import DATE_FORMAT, log_file_for


logger = logging.getLogger(__name__)

MAX_LOG_MINUTES = 60
_TIMESTAMP = re.compile(r'^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})')


def extract_recent_logs(
    log_dir: Union[str, Path],
    minutes: int = 1,
    now: Optional[datetime] = None,
) -> List[str]:
    """Return today's log lines stamped within the last ``minutes`` minutes."""
    if minutes < 1 or minutes > MAX_LOG_MINUTES:
        raise ValidationError(
            f"minutes must be between 1 and {MAX_LOG_MINUTES}", 'minutes', minutes
        )
    now = now or datetime.now()
    cutoff = now - timedelta(minutes=minutes)
    path = log_file_for(log_dir, now)
    try:
        content = path.read_text(encoding='utf-8')
    except FileNotFoundError:
        logger.warning("Log file %s not found", path)
        return []

    recent: List[str] = []
    for line in content.splitlines():
        match = _TIMESTAMP.match(line)
        if not match:
            continue
        try:
            stamp = datetime.strptime(match.group(1), DATE_FORMAT)
        except ValueError:
            continue
        if stamp >= cutoff:
            recent.append(line)
    return recent
