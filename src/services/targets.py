"""Resolve escalation targets to concrete recipient IDs.

Each target kind has its own resolver. A resolver returns a user ID or None
when it cannot find anyone; it never raises, so one bad target cannot abort
an escalation level.
"""

import logging
from abc import ABC, abstractmethod

from src.models.enums import EscalationTargetType
from src.models.reminder import Reminder
from src.schemas.escalation import EscalationTarget

logger = logging.getLogger(__name__)


class TargetResolver(ABC):
    """Resolves one kind of escalation target."""

    @abstractmethod
    def resolve(self, target: EscalationTarget, reminder: Reminder) -> str | None:
        """Return the user to notify, or None."""


class UserTargetResolver(TargetResolver):
    """A specific user named in the escalation config."""

    def resolve(self, target: EscalationTarget, reminder: Reminder) -> str | None:
        return target.user_id


class OrgChartTargetResolver(TargetResolver):
    """Manager, team lead and executive targets.

    There is no org directory yet, so these use the configured user and then the
    fallback user.
    """

    def resolve(self, target: EscalationTarget, reminder: Reminder) -> str | None:
        resolved = target.user_id or target.fallback_user_id
        if resolved is None:
            logger.warning(
                f"No {target.type.value} found for reminder {reminder.id} "
                f"(recipient {reminder.recipient_id})"
            )
        return resolved


class EscalationTargetResolver:
    """Dispatches each target to the resolver for its kind."""

    def __init__(self, resolvers: dict[EscalationTargetType, TargetResolver] | None = None):
        org_chart = OrgChartTargetResolver()
        self.resolvers = resolvers or {
            EscalationTargetType.USER: UserTargetResolver(),
            EscalationTargetType.MANAGER: org_chart,
            EscalationTargetType.TEAM_LEAD: org_chart,
            EscalationTargetType.EXECUTIVE: org_chart,
        }

    def resolve(self, target: EscalationTarget, reminder: Reminder) -> str | None:
        """Resolve a single target. Unknown kinds resolve to None."""
        resolver = self.resolvers.get(target.type)
        if resolver is None:
            logger.warning(f"Unknown escalation target type: {target.type.value}")
            return None
        try:
            return resolver.resolve(target, reminder)
        except Exception as e:
            logger.error(
                f"Failed to resolve {target.type.value} for reminder {reminder.id}: {e}"
            )
            return None

    def resolve_all(self, targets: list[EscalationTarget], reminder: Reminder) -> list[str]:
        """Resolve targets to unique recipient IDs, preserving order."""
        recipients: list[str] = []
        for target in targets:
            resolved = self.resolve(target, reminder)
            if resolved and resolved not in recipients:
                recipients.append(resolved)
        return recipients
