"""
Credit gate for Bookgen Agent.

Quota-bound roles spend one book credit per generation start. The
decrement is a single conditional UPDATE, so two concurrent starts can
never spend the same credit.
"""

from typing import Iterable, Optional

from bookgen_agent.db_manager import get_db_connection
from bookgen_agent.errors import InsufficientCreditsError
from bookgen_agent.models import RequestContext
from bookgen_agent.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_QUOTA_BOUND_ROLES = ("writer",)


def is_quota_bound(ctx: RequestContext,
                   quota_bound_roles: Iterable[str] = DEFAULT_QUOTA_BOUND_ROLES) -> bool:
    return ctx.role in tuple(quota_bound_roles)


def reserve(db_path: str, ctx: RequestContext, cost: int = 1,
            quota_bound_roles: Iterable[str] = DEFAULT_QUOTA_BOUND_ROLES) -> Optional[int]:
    """Spend ``cost`` credits for the requesting user.

    Args:
        db_path: Path to SQLite database file.
        ctx: Requesting user.
        cost: Credits to spend.
        quota_bound_roles: Roles that pay credits; everyone else is unlimited.

    Returns:
        Remaining credits, or None for roles without a quota.

    Raises:
        InsufficientCreditsError: If the user cannot cover ``cost``.

    Examples:
        >>> reserve("db.sqlite", RequestContext(user_id="u1", role="writer"))
        2
    """
    if not is_quota_bound(ctx, quota_bound_roles):
        return None

    with get_db_connection(db_path) as conn:
        cursor = conn.execute("""
            UPDATE users SET book_credits = book_credits - ?
            WHERE id = ? AND book_credits >= ?
        """, (cost, ctx.user_id, cost))
        if cursor.rowcount == 0:
            raise InsufficientCreditsError(
                f"User {ctx.user_id} does not have {cost} book credit(s) available"
            )
        remaining = conn.execute(
            "SELECT book_credits FROM users WHERE id = ?", (ctx.user_id,)
        ).fetchone()["book_credits"]

    logger.info(f"[CREDITS] Reserved {cost} credit(s) for {ctx.user_id}, {remaining} left")
    return remaining


def refund(db_path: str, ctx: RequestContext, cost: int = 1,
           quota_bound_roles: Iterable[str] = DEFAULT_QUOTA_BOUND_ROLES) -> None:
    """Give back credits reserved for a start that did not happen."""
    if not is_quota_bound(ctx, quota_bound_roles):
        return

    with get_db_connection(db_path) as conn:
        conn.execute("UPDATE users SET book_credits = book_credits + ? WHERE id = ?",
                     (cost, ctx.user_id))
    logger.info(f"[CREDITS] Refunded {cost} credit(s) to {ctx.user_id}")
