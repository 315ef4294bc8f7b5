"""
Deal State Machine
==================
Status set, transition table and role permission matrix for deals.

The transition table says which moves exist at all; the role matrix says
which of those an advertiser or a channel owner may request directly.
System-driven moves (payment detection, posting, verification, timeouts,
dispute resolution) skip the role matrix but never the table.
"""

from enum import Enum
from typing import Dict, List, Optional


class DealStatus(str, Enum):
    """Lifecycle states for deals"""
    PENDING_ACCEPTANCE = "pending_acceptance"
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_RECEIVED = "payment_received"
    CREATIVE_PENDING = "creative_pending"
    CREATIVE_SUBMITTED = "creative_submitted"
    CREATIVE_REVISION = "creative_revision"
    CREATIVE_APPROVED = "creative_approved"
    SCHEDULED = "scheduled"
    POSTED = "posted"
    VERIFIED = "verified"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class Role(str, Enum):
    ADVERTISER = "advertiser"
    CHANNEL_OWNER = "channel_owner"
    SYSTEM = "system"


S = DealStatus


class DealStateMachine:
    """
    Strict state machine for deal transitions.
    Pure lookups only; persistence and side effects live in the services.
    """

    # Valid state transitions: current_state -> [allowed_next_states]
    TRANSITIONS: Dict[DealStatus, List[DealStatus]] = {
        S.PENDING_ACCEPTANCE: [S.PENDING_PAYMENT, S.CANCELLED],
        S.PENDING_PAYMENT: [S.PAYMENT_RECEIVED, S.CANCELLED],
        S.PAYMENT_RECEIVED: [S.CREATIVE_PENDING, S.CANCELLED, S.REFUNDED],
        S.CREATIVE_PENDING: [S.CREATIVE_SUBMITTED, S.CANCELLED, S.REFUNDED],
        S.CREATIVE_SUBMITTED: [
            S.CREATIVE_APPROVED, S.CREATIVE_REVISION, S.SCHEDULED, S.CANCELLED, S.REFUNDED
        ],
        S.CREATIVE_REVISION: [S.CREATIVE_SUBMITTED, S.CANCELLED, S.REFUNDED],
        S.CREATIVE_APPROVED: [S.SCHEDULED, S.CANCELLED, S.REFUNDED],
        S.SCHEDULED: [S.POSTED, S.DISPUTED, S.CANCELLED, S.REFUNDED],
        S.POSTED: [S.VERIFIED, S.DISPUTED],
        S.VERIFIED: [S.COMPLETED],
        S.DISPUTED: [S.REFUNDED, S.VERIFIED],
        S.COMPLETED: [],  # Terminal state
        S.CANCELLED: [],  # Terminal state
        S.REFUNDED: [],   # Terminal state
    }

    # Moves each party may request directly
    ROLE_TRANSITIONS: Dict[Role, Dict[DealStatus, List[DealStatus]]] = {
        Role.ADVERTISER: {
            S.PENDING_ACCEPTANCE: [S.CANCELLED],
            S.PENDING_PAYMENT: [S.CANCELLED],
            S.PAYMENT_RECEIVED: [S.CANCELLED],
            S.CREATIVE_PENDING: [S.CANCELLED],
            S.CREATIVE_SUBMITTED: [S.CREATIVE_APPROVED, S.CREATIVE_REVISION, S.SCHEDULED],
            S.CREATIVE_REVISION: [S.CANCELLED],
            S.POSTED: [S.DISPUTED],
        },
        Role.CHANNEL_OWNER: {
            S.PENDING_ACCEPTANCE: [S.PENDING_PAYMENT, S.CANCELLED],
            S.PENDING_PAYMENT: [S.CANCELLED],
            S.PAYMENT_RECEIVED: [S.CANCELLED],
            S.CREATIVE_PENDING: [S.CREATIVE_SUBMITTED],
            S.CREATIVE_REVISION: [S.CREATIVE_SUBMITTED],
            S.CREATIVE_APPROVED: [S.SCHEDULED],
        },
    }

    # States where the deal waits on one of the parties; the timeout sweep
    # only looks at these
    AWAITING_ACTION: List[DealStatus] = [
        S.PENDING_ACCEPTANCE,
        S.PENDING_PAYMENT,
        S.PAYMENT_RECEIVED,
        S.CREATIVE_PENDING,
        S.CREATIVE_SUBMITTED,
        S.CREATIVE_REVISION,
        S.CREATIVE_APPROVED,
    ]

    # Human-readable state labels
    STATE_LABELS = {
        S.PENDING_ACCEPTANCE: 'Waiting for channel owner',
        S.PENDING_PAYMENT: 'Awaiting payment',
        S.PAYMENT_RECEIVED: 'Payment received',
        S.CREATIVE_PENDING: 'Waiting for creative',
        S.CREATIVE_SUBMITTED: 'Creative submitted',
        S.CREATIVE_REVISION: 'Revision requested',
        S.CREATIVE_APPROVED: 'Creative approved',
        S.SCHEDULED: 'Post scheduled',
        S.POSTED: 'Ad posted',
        S.VERIFIED: 'Verified',
        S.DISPUTED: 'Disputed',
        S.COMPLETED: 'Completed',
        S.CANCELLED: 'Cancelled',
        S.REFUNDED: 'Refunded',
    }

    # Step numbers for timeline UI
    STATE_STEPS = {
        S.PENDING_ACCEPTANCE: 1,
        S.PENDING_PAYMENT: 2,
        S.PAYMENT_RECEIVED: 3,
        S.CREATIVE_PENDING: 3,
        S.CREATIVE_SUBMITTED: 4,
        S.CREATIVE_REVISION: 4,
        S.CREATIVE_APPROVED: 5,
        S.SCHEDULED: 6,
        S.POSTED: 7,
        S.VERIFIED: 8,
        S.DISPUTED: 8,
        S.COMPLETED: 9,
        S.CANCELLED: 0,
        S.REFUNDED: 0,
    }

    @classmethod
    def can_transition(cls, current_state: DealStatus, new_state: DealStatus) -> bool:
        """Check if transition is valid"""
        return DealStatus(new_state) in cls.TRANSITIONS.get(DealStatus(current_state), [])

    @classmethod
    def role_can_request(
        cls, role: Role, current_state: DealStatus, new_state: DealStatus
    ) -> bool:
        """Check the role matrix; the system role is never restricted by it"""
        if role == Role.SYSTEM:
            return True
        allowed = cls.ROLE_TRANSITIONS.get(role, {}).get(DealStatus(current_state), [])
        return DealStatus(new_state) in allowed

    @classmethod
    def get_allowed_transitions(
        cls, current_state: DealStatus, role: Optional[Role] = None
    ) -> List[DealStatus]:
        """Get list of valid next states, optionally narrowed to one role"""
        allowed = cls.TRANSITIONS.get(DealStatus(current_state), [])
        if role is None or role == Role.SYSTEM:
            return list(allowed)
        return [s for s in allowed if cls.role_can_request(role, current_state, s)]

    @classmethod
    def is_valid_path(cls, path: List[DealStatus]) -> bool:
        """Check that every consecutive pair in ``path`` is a table edge"""
        return all(cls.can_transition(a, b) for a, b in zip(path, path[1:]))

    @classmethod
    def is_terminal(cls, state: DealStatus) -> bool:
        """Check if state is terminal (no further transitions)"""
        return len(cls.TRANSITIONS.get(DealStatus(state), [])) == 0

    @classmethod
    def get_step(cls, state: DealStatus) -> int:
        return cls.STATE_STEPS.get(DealStatus(state), 1)

    @classmethod
    def get_label(cls, state: DealStatus) -> str:
        state = DealStatus(state)
        return cls.STATE_LABELS.get(state, state.value.replace('_', ' ').title())
