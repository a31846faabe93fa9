from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

from gatekeeper.logging import get_logger
from gatekeeper.service.errors import ServerError
from gatekeeper.storage.models import AuditEvent, Identity

logger = get_logger(__name__)

T = TypeVar("T")

# Every lost compare-and-swap means another writer committed, so a writer
# racing N others needs at most N retries.
DEFAULT_CAS_RETRIES = 32


class IdentityRepository(Protocol):
    def create_identity(self, identity: Identity) -> Identity:
        ...

    def load_by_id(self, identity_id: str) -> Optional[Identity]:
        ...

    def load_by_email(self, email: str) -> Optional[Identity]:
        ...

    def compare_and_swap_update(
        self, identity_id: str, expected_revision: int, changes: Dict[str, Any]
    ) -> Optional[Identity]:
        """Apply ``changes`` only if the stored revision still equals ``expected_revision``.

        Returns the updated identity, or None when another writer got there first.
        """
        ...

    def list_identities(self) -> List[Identity]:
        ...


class AuditStore(Protocol):
    def record_audit_event(self, event: AuditEvent) -> None:
        ...

    def list_audit_events(
        self, *, identity_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        ...


Transition = Callable[[Identity], Tuple[Optional[Dict[str, Any]], T]]


def apply_transition(
    repo: IdentityRepository,
    identity: Identity,
    transition: Transition,
    *,
    max_retries: int = DEFAULT_CAS_RETRIES,
) -> Tuple[Identity, T]:
    """Run a pure state transition against the stored identity atomically.

    ``transition`` receives the latest identity and returns the field changes
    to persist together with an outcome value. When the compare-and-swap
    loses a race the identity is reloaded and the transition recomputed, so
    the outcome always reflects the state that was actually written.
    """
    current = identity
    for attempt in range(max_retries):
        changes, outcome = transition(current)
        if not changes:
            return current, outcome
        updated = repo.compare_and_swap_update(current.id, current.revision, changes)
        if updated is not None:
            return updated, outcome
        logger.debug(
            "identity_cas_conflict",
            identity_id=current.id,
            attempt=attempt + 1,
            expected_revision=current.revision,
        )
        reloaded = repo.load_by_id(current.id)
        if reloaded is None:
            raise ServerError("identity disappeared during update")
        current = reloaded
    logger.error("identity_cas_exhausted", identity_id=identity.id, retries=max_retries)
    raise ServerError("could not update identity due to concurrent modification")
