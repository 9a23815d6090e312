"""Per-member isolation for batch jobs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from subscription_billing import config
from subscription_billing.models import Member

logger = logging.getLogger("batch")


@dataclass
class MemberError:
    """One member whose unit of work failed inside a batch run."""

    member_id: str
    cause: str

    def to_dict(self) -> dict:
        return {"member_id": self.member_id, "cause": self.cause}


async def for_each_member(
    members: Iterable[Member],
    unit: Callable[[Member], Awaitable[None]],
    job_name: str,
    concurrency: int = config.MEMBER_CONCURRENCY,
) -> list[MemberError]:
    """Run *unit* for every member with bounded concurrency.

    A failing unit is logged and collected; it never stops the others.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))
    errors: list[MemberError] = []

    async def _guarded(member: Member) -> None:
        async with semaphore:
            try:
                await unit(member)
            except Exception as exc:
                logger.exception("%s failed for member %s", job_name, member.id)
                errors.append(MemberError(member.id, f"{type(exc).__name__}: {exc}"))

    await asyncio.gather(*(_guarded(m) for m in members))
    return errors
