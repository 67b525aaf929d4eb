"""Claim affidavit draft shared between the dispatcher and the presentation layer.

ClaimDraft is frozen. ClaimDraftStore swaps a whole new record in on every
update, so a reader on another thread never sees a half-applied merge.
"""

from dataclasses import dataclass, replace
from enum import Enum


class ClaimStatus(str, Enum):
    DRAFT = "draft"
    READY = "ready"
    SUBMITTED = "submitted"


_STATUS_ORDER = {ClaimStatus.DRAFT: 0, ClaimStatus.READY: 1, ClaimStatus.SUBMITTED: 2}

# Wire (camelCase) name -> attribute name
FIELD_NAMES = {
    "claimantName": "claimant_name",
    "deceasedName": "deceased_name",
    "relationship": "relationship",
    "bankName": "bank_name",
    "accountNumber": "account_number",
    "amount": "amount",
}

# Fields that must be filled before the draft may be marked ready.
# amount is not settable through the tool, so it cannot gate readiness.
REQUIRED_FIELDS = ("claimantName", "deceasedName", "relationship", "bankName", "accountNumber")


@dataclass(frozen=True)
class ClaimDraft:
    claimant_name: str = ""
    deceased_name: str = ""
    relationship: str = ""
    bank_name: str = ""
    account_number: str = ""
    amount: str = ""
    status: ClaimStatus = ClaimStatus.DRAFT

    def get(self, wire_name: str) -> str:
        return getattr(self, FIELD_NAMES[wire_name])

    def missing_fields(self) -> list[str]:
        return [name for name in REQUIRED_FIELDS if not self.get(name).strip()]

    def is_complete(self) -> bool:
        return not self.missing_fields()

    def merged(self, updates: dict) -> "ClaimDraft":
        """Return a copy with the given wire-named text fields replaced."""
        changes = {FIELD_NAMES[k]: v for k, v in updates.items() if k in FIELD_NAMES}
        return replace(self, **changes) if changes else self

    def to_dict(self) -> dict:
        data = {wire: getattr(self, attr) for wire, attr in FIELD_NAMES.items()}
        data["status"] = self.status.value
        return data


def can_transition(current: ClaimStatus, target: ClaimStatus) -> bool:
    """Status only ever moves forward one step (or stays put)."""
    delta = _STATUS_ORDER[target] - _STATUS_ORDER[current]
    return delta in (0, 1)


class ClaimDraftStore:
    """Holder for the current ClaimDraft snapshot.

    Args:
        on_change: called with the new ClaimDraft after every swap
    """

    def __init__(self, on_change=None):
        self._draft = ClaimDraft()
        self._on_change = on_change or (lambda d: None)

    @property
    def draft(self) -> ClaimDraft:
        return self._draft

    def swap(self, draft: ClaimDraft) -> ClaimDraft:
        """Install a new snapshot. Single reference assignment."""
        if draft is not self._draft:
            self._draft = draft
            self._on_change(draft)
        return draft

    def submit(self) -> ClaimDraft:
        """Explicit user action: move a ready draft to submitted."""
        if self._draft.status != ClaimStatus.READY:
            raise ValueError(f"Cannot submit a claim in status '{self._draft.status.value}'")
        return self.swap(replace(self._draft, status=ClaimStatus.SUBMITTED))

    def reset(self) -> ClaimDraft:
        return self.swap(ClaimDraft())
