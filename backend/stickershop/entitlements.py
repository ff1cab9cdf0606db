"""Plan lookup and free-tier generation quota.

A user's plan is "pro" while they have an active pro subscription row and
"free" otherwise. Free users get a fixed number of generations per trailing
window (24 hours by default, not a calendar day). Anonymous callers are not
quota-limited here: enforcement needs an identified user.

The quota check and the later GenerationRecord insert are not atomic. Two
concurrent jobs for a user at the limit can both pass the check, so a user
may briefly end up one or two generations over. We accept that overshoot
rather than serialising every submission on a per-user lock.
"""

import logging
from typing import Literal, Optional

from stickershop.database import Database
from stickershop.errors import QuotaExceeded

logger = logging.getLogger(__name__)

Plan = Literal["free", "pro"]

FREE: Plan = "free"
PRO: Plan = "pro"


class EntitlementGate:
    """Answers "what plan is this user on" and "may they generate again"."""

    def __init__(self, db: Database, free_limit: int, window_hours: int = 24):
        self.db = db
        self.free_limit = free_limit
        self.window_hours = window_hours

    async def get_plan(self, user_id: Optional[int]) -> Plan:
        if user_id is None or not self.db.is_connected:
            return FREE
        subscription = await self.db.get_active_pro_subscription(user_id)
        return PRO if subscription else FREE

    async def get_usage(self, user_id: Optional[int]) -> dict:
        """Quota status for display.

        Returns:
        - plan: 'free' | 'pro'
        - used: generations in the trailing window
        - limit: allowed generations (None for unlimited)
        - window_hours: size of the trailing window
        """
        plan = await self.get_plan(user_id)
        used = 0
        if user_id is not None and self.db.is_connected:
            used = await self.db.count_recent_generations(user_id, self.window_hours)
        return {
            "plan": plan,
            "used": used,
            "limit": self.free_limit if plan == FREE else None,
            "window_hours": self.window_hours,
        }

    async def assert_within_free_quota(self, user_id: Optional[int]) -> None:
        """Raise QuotaExceeded if a free user has used up the trailing window."""
        if user_id is None:
            return

        if await self.get_plan(user_id) == PRO:
            return

        used = await self.db.count_recent_generations(user_id, self.window_hours)
        if used >= self.free_limit:
            logger.info("User %s hit free quota (%d/%d)", user_id, used, self.free_limit)
            raise QuotaExceeded(limit=self.free_limit, used=used, window_hours=self.window_hours)
