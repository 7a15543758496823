"""
View-scope lifecycle tracking for polling sessions.

Screens of the intake flow register as scopes owning a set of documents.
When a scope goes away, or the flow navigates to another route, the polling
of the documents it owned is cleaned up so no timer outlives its view.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from .store import PollingStateStore

logger = structlog.get_logger(__name__)

DEFAULT_STALE_SCOPE_AGE_S = 300


@dataclass
class ScopeContext:
    """Documents owned by one registered view scope."""

    scope_id: str
    route: str
    registered_at: datetime
    document_ids: list[str] = field(default_factory=list)


class PollingLifecycleManager:
    """Ties polling sessions to the view scopes that own their documents."""

    def __init__(
        self,
        store: PollingStateStore,
        clock: Callable[[], datetime] | None = None,
        initial_route: str = "/",
    ) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(UTC))
        self.current_route = initial_route
        self._scopes: dict[str, ScopeContext] = {}
        self._route_documents: dict[str, set[str]] = {}

    def register_scope(
        self, scope_id: str, document_ids: list[str], route: str | None = None
    ) -> ScopeContext:
        """
        Register a scope and the documents it owns.

        Args:
            scope_id: Unique scope identifier
            document_ids: Documents whose polling the scope owns
            route: Route the scope lives on (defaults to the current route)

        Returns:
            The registered scope context
        """
        route = route or self.current_route
        if scope_id in self._scopes:
            self._forget_scope(self._scopes[scope_id])

        context = ScopeContext(
            scope_id=scope_id,
            route=route,
            registered_at=self._clock(),
            document_ids=list(dict.fromkeys(document_ids)),
        )
        self._scopes[scope_id] = context
        self._route_documents.setdefault(route, set()).update(context.document_ids)

        logger.info(
            "Registered polling scope",
            scope_id=scope_id,
            route=route,
            document_ids=context.document_ids,
            total_scopes=len(self._scopes),
        )
        return context

    def unregister_scope(self, scope_id: str) -> None:
        """Unregister a scope and clean up polling of all its documents."""
        context = self._scopes.get(scope_id)
        if context is None:
            logger.warning("Cannot unregister unknown scope", scope_id=scope_id)
            return

        for document_id in context.document_ids:
            self.store.cleanup_polling_resources(document_id)

        self._forget_scope(context)
        del self._scopes[scope_id]

        logger.info(
            "Unregistered polling scope",
            scope_id=scope_id,
            cleaned_documents=context.document_ids,
            remaining_scopes=len(self._scopes),
        )

    def add_document_to_scope(self, scope_id: str, document_id: str) -> None:
        context = self._scopes.get(scope_id)
        if context is None:
            logger.warning(
                "Cannot add document to unknown scope",
                scope_id=scope_id,
                document_id=document_id,
            )
            return

        if document_id not in context.document_ids:
            context.document_ids.append(document_id)
            self._route_documents.setdefault(context.route, set()).add(document_id)
            logger.debug(
                "Added document to scope", scope_id=scope_id, document_id=document_id
            )

    def remove_document_from_scope(self, scope_id: str, document_id: str) -> None:
        """Remove a document from a scope and clean up its polling."""
        context = self._scopes.get(scope_id)
        if context is None:
            logger.warning(
                "Cannot remove document from unknown scope",
                scope_id=scope_id,
                document_id=document_id,
            )
            return

        if document_id not in context.document_ids:
            return

        context.document_ids.remove(document_id)
        route_documents = self._route_documents.get(context.route)
        if route_documents is not None:
            route_documents.discard(document_id)
            if not route_documents:
                del self._route_documents[context.route]

        self.store.cleanup_polling_resources(document_id)
        logger.debug(
            "Removed document from scope", scope_id=scope_id, document_id=document_id
        )

    def handle_route_change(self, new_route: str) -> list[str]:
        """
        Switch to a new route.

        Scopes bound to any other route are unregistered, then active
        sessions no longer owned by a scope are cleaned up.

        Returns:
            Ids of the scopes that were unregistered
        """
        self.current_route = new_route
        departed = [
            scope_id
            for scope_id, context in self._scopes.items()
            if context.route != new_route
        ]
        for scope_id in departed:
            logger.info(
                "Cleaning up scope after route change",
                scope_id=scope_id,
                new_route=new_route,
            )
            self.unregister_scope(scope_id)

        self.cleanup_orphaned_polling()
        return departed

    def cleanup_orphaned_polling(self) -> list[str]:
        """
        Clean up active sessions whose document no scope owns.

        Returns:
            Ids of the documents that were cleaned up
        """
        tracked = {
            document_id
            for context in self._scopes.values()
            for document_id in context.document_ids
        }
        orphaned = [
            document_id
            for document_id in self.store.get_active_polling_documents()
            if document_id not in tracked
        ]
        for document_id in orphaned:
            self.store.cleanup_polling_resources(document_id)

        if orphaned:
            logger.info("Cleaned up orphaned polling sessions", count=len(orphaned))
        return orphaned

    def cleanup_stale_scopes(self, max_age_s: float = DEFAULT_STALE_SCOPE_AGE_S) -> int:
        """
        Unregister scopes registered longer ago than ``max_age_s``.

        Returns:
            Number of scopes removed
        """
        now = self._clock()
        stale = [
            scope_id
            for scope_id, context in self._scopes.items()
            if (now - context.registered_at).total_seconds() > max_age_s
        ]
        for scope_id in stale:
            logger.info("Cleaning up stale scope", scope_id=scope_id)
            self.unregister_scope(scope_id)

        if stale:
            logger.info("Cleaned up stale scopes", count=len(stale))
        return len(stale)

    def cleanup_all(self) -> None:
        """Hard reset: empty the store and forget every scope."""
        logger.info("Cleaning up all polling", scopes=len(self._scopes))
        self.store.cleanup_all_polling_resources()
        self._scopes.clear()
        self._route_documents.clear()

    def get_scope(self, scope_id: str) -> ScopeContext | None:
        return self._scopes.get(scope_id)

    def get_registered_scopes(self) -> list[ScopeContext]:
        return list(self._scopes.values())

    def get_documents_for_route(self, route: str | None = None) -> list[str]:
        return sorted(self._route_documents.get(route or self.current_route, ()))

    def is_scope_registered(self, scope_id: str) -> bool:
        return scope_id in self._scopes

    def get_lifecycle_statistics(self) -> dict[str, Any]:
        """Get scope counts and ages in milliseconds."""
        now = self._clock()
        scopes = list(self._scopes.values())

        def age_ms(context: ScopeContext) -> float:
            return (now - context.registered_at).total_seconds() * 1000

        oldest = min(scopes, key=lambda c: c.registered_at) if scopes else None
        return {
            "total_scopes": len(scopes),
            "total_tracked_documents": sum(len(c.document_ids) for c in scopes),
            "routes_with_polling": len(self._route_documents),
            "average_scope_age_ms": (
                round(sum(age_ms(c) for c in scopes) / len(scopes)) if scopes else 0
            ),
            "oldest_scope": (
                {
                    "scope_id": oldest.scope_id,
                    "age_ms": round(age_ms(oldest)),
                    "document_count": len(oldest.document_ids),
                }
                if oldest
                else None
            ),
        }

    def _forget_scope(self, context: ScopeContext) -> None:
        route_documents = self._route_documents.get(context.route)
        if route_documents is None:
            return
        route_documents.difference_update(context.document_ids)
        if not route_documents:
            del self._route_documents[context.route]
