# dtfshop/services/numbering.py
import secrets
import string
import time

from sqlalchemy import select

from ..model import Quote
from ..utils.clock import utcnow

_B36 = string.digits + string.ascii_uppercase


def base36(n: int) -> str:
    if n <= 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_B36[r])
    return "".join(reversed(out))


def generate_order_number(voucher_purchase=False) -> str:
    # BONO-LX2A9K1C-4KQ7Z / DTF-LX2A9K1C-4KQ7Z
    prefix = "BONO" if voucher_purchase else "DTF"
    ms = int(time.time() * 1000)
    rand = "".join(secrets.choice(_B36) for _ in range(5))
    return f"{prefix}-{base36(ms)}-{rand}"


def next_quote_number(session, now=None) -> str:
    """PRES-YYYY-NNNN, counting up within the year."""
    prefix = f"PRES-{(now or utcnow()).year}-"
    last = session.scalars(
        select(Quote.quote_number)
        .where(Quote.quote_number.like(f"{prefix}%"))
        .order_by(Quote.quote_number.desc())
        .limit(1)
    ).first()
    n = 1
    if last:
        try:
            n = int(last.rsplit("-", 1)[1]) + 1
        except ValueError:
            n = 1
    return f"{prefix}{n:04d}"
