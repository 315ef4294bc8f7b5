"""
Data Models
===========
Dataclasses for deals and the records the deal services read.

Deals are persisted as JSON documents; every optional field is modelled
explicitly here so the store never has to strip undefined values.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from state_machine import DealStatus, DealStateMachine


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    # Always UTC so stored timestamps compare correctly as strings
    if not value:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO string (or pass through a datetime), always timezone-aware"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        result = value
    else:
        result = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result


# =============================================================================
# CREATIVE
# =============================================================================

@dataclass
class Button:
    """Inline URL button attached to an ad post"""
    text: str
    url: str

    def __post_init__(self):
        if not self.text or not str(self.text).strip():
            raise ValueError("Button text is required")
        if not self.url or not str(self.url).strip():
            raise ValueError("Button url is required")

    def to_dict(self) -> Dict[str, Any]:
        return {'text': self.text, 'url': self.url}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Button':
        return cls(text=data.get('text'), url=data.get('url'))


def _buttons_from(items: Optional[List[Any]]) -> List[Button]:
    return [b if isinstance(b, Button) else Button.from_dict(b) for b in (items or [])]


@dataclass
class AdBrief:
    """Advertiser's brief; every field is optional"""
    suggested_text: Optional[str] = None
    suggested_image_url: Optional[str] = None
    publish_time: Optional[datetime] = None
    additional_notes: Optional[str] = None
    hashtags: List[str] = field(default_factory=list)
    call_to_action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'suggested_text': self.suggested_text,
            'suggested_image_url': self.suggested_image_url,
            'publish_time': to_iso(self.publish_time),
            'additional_notes': self.additional_notes,
            'hashtags': list(self.hashtags),
            'call_to_action': self.call_to_action,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AdBrief':
        return cls(
            suggested_text=data.get('suggested_text'),
            suggested_image_url=data.get('suggested_image_url'),
            publish_time=parse_datetime(data.get('publish_time')),
            additional_notes=data.get('additional_notes'),
            hashtags=list(data.get('hashtags') or []),
            call_to_action=data.get('call_to_action'),
        )


@dataclass
class Creative:
    """The creative currently attached to a deal"""
    text: str
    media_urls: List[str] = field(default_factory=list)
    buttons: List[Button] = field(default_factory=list)
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.text or not str(self.text).strip():
            raise ValueError("Creative text is required")
        self.buttons = _buttons_from(self.buttons)
        if self.submitted_at is None:
            self.submitted_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'text': self.text,
            'media_urls': list(self.media_urls),
            'buttons': [b.to_dict() for b in self.buttons],
            'submitted_at': to_iso(self.submitted_at),
            'approved_at': to_iso(self.approved_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Creative':
        return cls(
            text=data.get('text'),
            media_urls=list(data.get('media_urls') or []),
            buttons=data.get('buttons') or [],
            submitted_at=parse_datetime(data.get('submitted_at')),
            approved_at=parse_datetime(data.get('approved_at')),
        )


CREATIVE_PENDING = 'pending'
CREATIVE_APPROVED = 'approved'
CREATIVE_REJECTED = 'rejected'


@dataclass
class CreativeSubmission:
    """One entry in a deal's creative history"""
    id: str
    text: str
    media_urls: List[str] = field(default_factory=list)
    buttons: List[Button] = field(default_factory=list)
    submitted_at: Optional[datetime] = None
    status: str = CREATIVE_PENDING
    feedback: Optional[str] = None

    def __post_init__(self):
        if self.status not in (CREATIVE_PENDING, CREATIVE_APPROVED, CREATIVE_REJECTED):
            raise ValueError(f"Invalid creative status: {self.status}")
        self.buttons = _buttons_from(self.buttons)
        if self.submitted_at is None:
            self.submitted_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'text': self.text,
            'media_urls': list(self.media_urls),
            'buttons': [b.to_dict() for b in self.buttons],
            'submitted_at': to_iso(self.submitted_at),
            'status': self.status,
            'feedback': self.feedback,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CreativeSubmission':
        return cls(
            id=data['id'],
            text=data.get('text', ''),
            media_urls=list(data.get('media_urls') or []),
            buttons=data.get('buttons') or [],
            submitted_at=parse_datetime(data.get('submitted_at')),
            status=data.get('status', CREATIVE_PENDING),
            feedback=data.get('feedback'),
        )


# =============================================================================
# DELIVERY AND RESOLUTION
# =============================================================================

@dataclass(frozen=True)
class VerificationCheck:
    checked_at: datetime
    post_exists: bool
    post_unmodified: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'checked_at': to_iso(self.checked_at),
            'post_exists': self.post_exists,
            'post_unmodified': self.post_unmodified,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VerificationCheck':
        return cls(
            checked_at=parse_datetime(data['checked_at']),
            post_exists=bool(data['post_exists']),
            post_unmodified=bool(data['post_unmodified']),
        )


RESOLUTION_REFUND = 'refund'
RESOLUTION_RELEASE = 'release'


@dataclass(frozen=True)
class Resolution:
    """Dispute resolution record; attached once and never changed"""
    resolution: str
    reason: str
    resolved_by: int
    resolved_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'resolution': self.resolution,
            'reason': self.reason,
            'resolved_by': self.resolved_by,
            'resolved_at': to_iso(self.resolved_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Resolution':
        return cls(
            resolution=data['resolution'],
            reason=data.get('reason', ''),
            resolved_by=data['resolved_by'],
            resolved_at=parse_datetime(data['resolved_at']),
        )


# =============================================================================
# DEAL
# =============================================================================

SOURCE_LISTING = 'listing'
SOURCE_REQUEST = 'request'


@dataclass
class Deal:
    """Deal between advertiser and channel owner"""
    id: str
    channel_id: int
    channel_owner_id: int
    advertiser_id: int
    source_type: str
    source_id: Optional[int]
    amount: float
    status: DealStatus
    format: str = 'post'
    post_duration_hours: int = 24

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    auto_cancel_deadline: Optional[datetime] = None

    brief: Optional[AdBrief] = None
    publish_with_image: bool = False
    current_creative: Optional[Creative] = None
    creative_history: List[CreativeSubmission] = field(default_factory=list)

    escrow_account_ref: Optional[int] = None
    escrow_address: Optional[str] = None
    escrow_balance_last_observed: float = 0.0
    advertiser_refund_address: Optional[str] = None
    platform_fee: Optional[float] = None

    scheduled_time: Optional[datetime] = None
    posted_at: Optional[datetime] = None
    post_ref: Optional[int] = None
    verification_checks: List[VerificationCheck] = field(default_factory=list)
    dispute_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None

    resolution: Optional[Resolution] = None
    is_demo: bool = False

    def __post_init__(self):
        self.status = DealStatus(self.status)
        if self.created_at is None:
            self.created_at = utcnow()
        if self.updated_at is None:
            self.updated_at = self.created_at
        if self.last_activity_at is None:
            self.last_activity_at = self.created_at

    @property
    def is_terminal(self) -> bool:
        return DealStateMachine.is_terminal(self.status)

    def party_ids(self) -> List[int]:
        return [self.advertiser_id, self.channel_owner_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'channel_id': self.channel_id,
            'channel_owner_id': self.channel_owner_id,
            'advertiser_id': self.advertiser_id,
            'source_type': self.source_type,
            'source_id': self.source_id,
            'amount': self.amount,
            'status': self.status.value,
            'format': self.format,
            'post_duration_hours': self.post_duration_hours,
            'created_at': to_iso(self.created_at),
            'updated_at': to_iso(self.updated_at),
            'last_activity_at': to_iso(self.last_activity_at),
            'auto_cancel_deadline': to_iso(self.auto_cancel_deadline),
            'brief': self.brief.to_dict() if self.brief else None,
            'publish_with_image': self.publish_with_image,
            'current_creative': self.current_creative.to_dict() if self.current_creative else None,
            'creative_history': [c.to_dict() for c in self.creative_history],
            'escrow_account_ref': self.escrow_account_ref,
            'escrow_address': self.escrow_address,
            'escrow_balance_last_observed': self.escrow_balance_last_observed,
            'advertiser_refund_address': self.advertiser_refund_address,
            'platform_fee': self.platform_fee,
            'scheduled_time': to_iso(self.scheduled_time),
            'posted_at': to_iso(self.posted_at),
            'post_ref': self.post_ref,
            'verification_checks': [c.to_dict() for c in self.verification_checks],
            'dispute_reason': self.dispute_reason,
            'cancellation_reason': self.cancellation_reason,
            'resolution': self.resolution.to_dict() if self.resolution else None,
            'is_demo': self.is_demo,
        }

    def to_api_dict(self) -> Dict[str, Any]:
        """Snapshot for API responses, with timeline helpers"""
        data = self.to_dict()
        data.update({
            'step': DealStateMachine.get_step(self.status),
            'label': DealStateMachine.get_label(self.status),
            'is_terminal': self.is_terminal,
            'allowed_transitions': [
                s.value for s in DealStateMachine.get_allowed_transitions(self.status)
            ],
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Deal':
        brief = data.get('brief')
        creative = data.get('current_creative')
        resolution = data.get('resolution')
        return cls(
            id=data['id'],
            channel_id=data['channel_id'],
            channel_owner_id=data['channel_owner_id'],
            advertiser_id=data['advertiser_id'],
            source_type=data['source_type'],
            source_id=data.get('source_id'),
            amount=float(data['amount']),
            status=data['status'],
            format=data.get('format', 'post'),
            post_duration_hours=int(data.get('post_duration_hours', 24)),
            created_at=parse_datetime(data.get('created_at')),
            updated_at=parse_datetime(data.get('updated_at')),
            last_activity_at=parse_datetime(data.get('last_activity_at')),
            auto_cancel_deadline=parse_datetime(data.get('auto_cancel_deadline')),
            brief=AdBrief.from_dict(brief) if brief else None,
            publish_with_image=bool(data.get('publish_with_image', False)),
            current_creative=Creative.from_dict(creative) if creative else None,
            creative_history=[
                CreativeSubmission.from_dict(c) for c in data.get('creative_history') or []
            ],
            escrow_account_ref=data.get('escrow_account_ref'),
            escrow_address=data.get('escrow_address'),
            escrow_balance_last_observed=float(data.get('escrow_balance_last_observed') or 0),
            advertiser_refund_address=data.get('advertiser_refund_address'),
            platform_fee=data.get('platform_fee'),
            scheduled_time=parse_datetime(data.get('scheduled_time')),
            posted_at=parse_datetime(data.get('posted_at')),
            post_ref=data.get('post_ref'),
            verification_checks=[
                VerificationCheck.from_dict(c) for c in data.get('verification_checks') or []
            ],
            dispute_reason=data.get('dispute_reason'),
            cancellation_reason=data.get('cancellation_reason'),
            resolution=Resolution.from_dict(resolution) if resolution else None,
            is_demo=bool(data.get('is_demo', False)),
        )


# =============================================================================
# RECORDS OWNED BY THE CRUD LAYER
# =============================================================================

@dataclass
class User:
    id: int
    telegram_id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    wallet_address: Optional[str] = None


def is_arbiter(user: Optional[User], arbiter_ids: List[int]) -> bool:
    return user is not None and user.telegram_id in arbiter_ids


@dataclass
class Channel:
    id: int
    chat_id: int
    owner_id: int
    username: Optional[str] = None
    title: Optional[str] = None
    admin_ids: List[int] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        if self.username:
            return f"@{self.username.lstrip('@')}"
        return self.title or f"Channel {self.id}"


@dataclass
class AdRequest:
    id: int
    advertiser_id: int
    applicant_channel_ids: List[int] = field(default_factory=list)
    status: str = 'active'


WALLET_TYPE_DEAL = 'deal'
WALLET_TYPE_USER = 'user'


@dataclass
class EscrowWallet:
    """Ledger account row; ``encrypted_mnemonic`` never leaves the escrow layer"""
    address: str
    encrypted_mnemonic: str
    owner_id: Optional[int] = None
    wallet_type: str = WALLET_TYPE_DEAL
    wallet_version: str = 'v4r2'
    id: Optional[int] = None
    deal_id: Optional[str] = None
    balance: float = 0.0
    spent: bool = False
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = utcnow()

    def public_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'address': self.address,
            'deal_id': self.deal_id,
            'wallet_type': self.wallet_type,
            'balance': self.balance,
            'spent': self.spent,
        }
