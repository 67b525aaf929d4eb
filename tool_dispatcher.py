"""
Tool-call dispatch for the caseworker session.

The remote model fills in the claim affidavit by calling declared functions.
ToolRegistry maps a tool name to its declaration (sent at connect time) and a
handler. ToolCallDispatcher runs a batch of calls in order and produces exactly
one ToolResult per call; the service stalls its turn if any call goes
unanswered.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Callable

from claim_state import (
    FIELD_NAMES, REQUIRED_FIELDS, ClaimDraft, ClaimDraftStore, ClaimStatus, can_transition,
)

logger = logging.getLogger(__name__)

UPDATE_CLAIM_DRAFT = "updateClaimDraft"

# Neutral acknowledgement for calls nobody handles
NEUTRAL_RESULT = {"result": "ok"}


@dataclass(frozen=True)
class ToolCall:
    call_id: str
    name: str
    args: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    name: str
    response: dict

    def to_wire(self) -> dict:
        return {"id": self.call_id, "name": self.name, "response": self.response}


@dataclass
class ToolSpec:
    """A declared function and the handler that applies it.

    handler(args) returns the response dict sent back to the model.
    """
    name: str
    description: str
    parameters: dict
    handler: Callable[[dict], dict]

    def declaration(self) -> dict:
        return {"name": self.name, "description": self.description,
                "parameters": self.parameters}


class ToolRegistry:
    """Tool name -> ToolSpec."""

    def __init__(self):
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec):
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def declarations(self) -> list[dict]:
        return [spec.declaration() for spec in self._tools.values()]

    def __contains__(self, name) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


# ── updateClaimDraft ─────────────────────────────────────────────

UPDATE_CLAIM_DRAFT_PARAMETERS = {
    "type": "OBJECT",
    "properties": {
        "claimantName": {"type": "STRING", "description": "Name of the person claiming the funds"},
        "deceasedName": {"type": "STRING", "description": "Name of the deceased account holder (if applicable)"},
        "relationship": {"type": "STRING", "description": "Relationship of claimant to deceased (e.g., Son, Wife)"},
        "bankName": {"type": "STRING", "description": "Name of the bank holding the funds"},
        "accountNumber": {"type": "STRING", "description": "Account number if available"},
        "status": {"type": "STRING", "enum": ["draft", "ready"],
                   "description": "Set to ready if all fields are filled"},
    },
}

# Only these keys may be written by the tool; amount is not exposed to the model
_TOOL_TEXT_FIELDS = tuple(k for k in UPDATE_CLAIM_DRAFT_PARAMETERS["properties"] if k in FIELD_NAMES)


def _coerce_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def apply_claim_update(draft: ClaimDraft, args: dict) -> tuple[ClaimDraft, list[str]]:
    """Merge a partial update into a draft.

    Returns the new draft and a list of notes about anything refused. Keys
    that are absent are left untouched; unknown keys are ignored.
    """
    notes = []
    updates = {k: _coerce_text(args[k]) for k in _TOOL_TEXT_FIELDS if k in args}
    if draft.status != ClaimStatus.DRAFT:
        # A ready claim keeps every required field filled
        for name in REQUIRED_FIELDS:
            if name in updates and not updates[name]:
                del updates[name]
                notes.append(f"Cannot clear {name} on a {draft.status.value} claim")
    new_draft = draft.merged(updates)

    if "status" in args:
        raw = _coerce_text(args["status"]).lower()
        try:
            target = ClaimStatus(raw)
        except ValueError:
            notes.append(f"Unknown status '{raw}' ignored")
            return new_draft, notes

        if target == ClaimStatus.SUBMITTED:
            notes.append("Submission requires the user's confirmation; status not changed")
        elif not can_transition(new_draft.status, target):
            notes.append(f"Status cannot move from {new_draft.status.value} to {target.value}")
        elif target == ClaimStatus.READY and not new_draft.is_complete():
            missing = ", ".join(new_draft.missing_fields())
            notes.append(f"Cannot mark ready, still missing: {missing}")
        else:
            new_draft = replace(new_draft, status=target)

    return new_draft, notes


def make_update_claim_draft_tool(store: ClaimDraftStore) -> ToolSpec:
    """Build the updateClaimDraft tool bound to a draft store."""

    def handler(args: dict) -> dict:
        new_draft, notes = apply_claim_update(store.draft, args)
        store.swap(new_draft)
        response = {"result": "Form updated successfully"}
        if notes:
            response["notes"] = notes
        missing = new_draft.missing_fields()
        if missing:
            response["missing"] = missing
        response["status"] = new_draft.status.value
        return response

    return ToolSpec(
        name=UPDATE_CLAIM_DRAFT,
        description=("Update the fields of the unclaimed deposit claim affidavit "
                     "based on user input or document analysis."),
        parameters=UPDATE_CLAIM_DRAFT_PARAMETERS,
        handler=handler,
    )


def default_registry(store: ClaimDraftStore) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(make_update_claim_draft_tool(store))
    return registry


# ── Dispatcher ───────────────────────────────────────────────────

def _normalize_args(args) -> dict:
    """Tool args arrive as a dict, occasionally as a JSON string."""
    if args is None:
        return {}
    if isinstance(args, str):
        args = json.loads(args) if args.strip() else {}
    if not isinstance(args, dict):
        raise ValueError(f"Tool arguments must be an object, got {type(args).__name__}")
    return args


class ToolCallDispatcher:
    """Apply a batch of tool calls in order, one result per call."""

    def __init__(self, registry: ToolRegistry):
        self._registry = registry
        self.calls_handled = 0

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def dispatch(self, calls: list[ToolCall]) -> list[ToolResult]:
        results = []
        for call in calls:
            results.append(self._dispatch_one(call))
            self.calls_handled += 1
        return results

    def _dispatch_one(self, call: ToolCall) -> ToolResult:
        spec = self._registry.get(call.name)
        if spec is None:
            logger.warning("Unknown tool '%s' (call %s), acknowledging", call.name, call.call_id)
            return ToolResult(call.call_id, call.name, dict(NEUTRAL_RESULT))

        try:
            args = _normalize_args(call.args)
            logger.info("Tool call %s(%s)", call.name, args)
            response = spec.handler(args)
        except Exception as e:
            logger.error("Tool %s failed: %s", call.name, e)
            response = {"error": str(e)}
        return ToolResult(call.call_id, call.name, response)
