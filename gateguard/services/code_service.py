import logging
import random
from collections.abc import Collection
from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.orm import Session

from gateguard.core.config import get_settings
from gateguard.core.exceptions import CodeExhaustedError
from gateguard.db.models import CheckInCode
from gateguard.services.time_window_service import utcnow

settings = get_settings()
logger = logging.getLogger(__name__)

_system_random = random.SystemRandom()


def live_codes(db: Session, society_name: str, now: datetime | None = None) -> set[str]:
    """Codes of the society whose validity window currently holds.

    Indefinite (permanent member) codes count as live once started.
    """
    now = now or utcnow()
    rows = (
        db.query(CheckInCode.code)
        .filter(
            CheckInCode.society_name == society_name,
            or_(CheckInCode.start_at.is_(None), CheckInCode.start_at < now),
            or_(CheckInCode.expiry_at.is_(None), CheckInCode.expiry_at > now),
        )
        .all()
    )
    return {row[0] for row in rows}


def draw_code(taken: Collection[str], rng: random.Random | None = None) -> str:
    rng = rng or _system_random
    low, high = settings.CHECKIN_CODE_MIN, settings.CHECKIN_CODE_MAX
    in_range = [code for code in taken if code.isdigit() and low <= int(code) <= high]
    if len(in_range) >= high - low + 1:
        raise CodeExhaustedError()

    code = str(rng.randint(low, high))
    while code in taken:
        code = str(rng.randint(low, high))
    return code


def issue_code(
    db: Session,
    society_name: str,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> str:
    taken = live_codes(db, society_name, now=now)
    code = draw_code(taken, rng=rng)
    logger.debug("issued check-in code society=%s live=%d", society_name, len(taken))
    return code
