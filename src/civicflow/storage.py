"""Issue storage collaborator interface.

The storage engine itself is external. The orchestrator talks to it through
the IssueStore protocol, supplying the city id on every call; the store
guarantees that one city's queries never return another city's rows.

InMemoryIssueStore implements the protocol for development and tests.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from src.civicflow.errors import NotFoundError
from src.civicflow.models import Issue, IssueStatus


logger = logging.getLogger(__name__)


@runtime_checkable
class IssueStore(Protocol):
    """Protocol for the issue storage collaborator."""

    async def store(self, issue: Issue) -> None:
        """Insert a new issue."""
        ...

    async def retrieve(self, city_id: str, issue_id: str) -> Optional[Issue]:
        """Get an issue of the given city, or None."""
        ...

    async def apply_changes(
        self, city_id: str, issue_id: str, changes: Dict[str, Any]
    ) -> Issue:
        """Merge field changes into an existing issue and return it.

        Only the given fields are written, so concurrent writers touching
        different fields (e.g. duplicate linking) do not overwrite each other.

        Raises:
            NotFoundError: If the issue does not exist in that city.
        """
        ...

    async def update_status(
        self, city_id: str, issue_id: str, status: IssueStatus
    ) -> Issue:
        """Set the status of an issue and return the updated issue.

        Raises:
            NotFoundError: If the issue does not exist in that city.
        """
        ...

    async def list_by_city(
        self, city_id: str, since: Optional[datetime] = None
    ) -> List[Issue]:
        """List a city's issues, optionally only those submitted at or after ``since``."""
        ...

    async def link_duplicates(
        self, city_id: str, primary_id: str, duplicate_ids: Iterable[str]
    ) -> int:
        """Point duplicates at the primary and bump its affected count.

        Already-linked duplicates are skipped. Returns the number of newly
        linked duplicates.
        """
        ...


class InMemoryIssueStore:
    """In-memory IssueStore partitioned by city."""

    def __init__(self) -> None:
        self._issues: Dict[str, Dict[str, Issue]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    async def store(self, issue: Issue) -> None:
        async with self._lock:
            self._issues[issue.city_id][issue.issue_id] = issue.model_copy(deep=True)

    async def retrieve(self, city_id: str, issue_id: str) -> Optional[Issue]:
        issue = self._issues.get(city_id, {}).get(issue_id)
        return issue.model_copy(deep=True) if issue else None

    async def apply_changes(
        self, city_id: str, issue_id: str, changes: Dict[str, Any]
    ) -> Issue:
        async with self._lock:
            issue = self._issues.get(city_id, {}).get(issue_id)
            if issue is None:
                raise NotFoundError("issue", issue_id)
            updated = Issue.model_validate({**issue.model_dump(), **changes})
            self._issues[city_id][issue_id] = updated
            return updated.model_copy(deep=True)

    async def update_status(
        self, city_id: str, issue_id: str, status: IssueStatus
    ) -> Issue:
        async with self._lock:
            issue = self._issues.get(city_id, {}).get(issue_id)
            if issue is None:
                raise NotFoundError("issue", issue_id)
            updated = issue.model_copy(update={"status": status})
            self._issues[city_id][issue_id] = updated
            return updated.model_copy(deep=True)

    async def list_by_city(
        self, city_id: str, since: Optional[datetime] = None
    ) -> List[Issue]:
        issues = self._issues.get(city_id, {}).values()
        return [
            issue.model_copy(deep=True)
            for issue in issues
            if since is None or issue.submitted_at >= since
        ]

    async def link_duplicates(
        self, city_id: str, primary_id: str, duplicate_ids: Iterable[str]
    ) -> int:
        async with self._lock:
            city = self._issues.get(city_id, {})
            primary = city.get(primary_id)
            if primary is None:
                raise NotFoundError("issue", primary_id)

            newly_linked = 0
            for duplicate_id in duplicate_ids:
                if duplicate_id == primary_id:
                    continue
                duplicate = city.get(duplicate_id)
                if duplicate is None:
                    raise NotFoundError("issue", duplicate_id)
                if duplicate.duplicate_of == primary_id:
                    continue
                if duplicate.duplicate_of is not None:
                    logger.warning(
                        "Duplicate already linked to another primary; skipping",
                        extra={
                            "issue_id": duplicate_id,
                            "linked_to": duplicate.duplicate_of,
                            "requested_primary": primary_id,
                        },
                    )
                    continue
                city[duplicate_id] = duplicate.model_copy(
                    update={"duplicate_of": primary_id}
                )
                newly_linked += 1

            if newly_linked:
                city[primary_id] = primary.model_copy(
                    update={"affected_count": primary.affected_count + newly_linked}
                )
            return newly_linked
