from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Literal, Mapping

Role = Literal["user", "assistant"]
Owner = Literal["Rep", "Customer"]

OWNERS = ("Rep", "Customer")


def _str_or(value: Any, default: str) -> str:
    return value if isinstance(value, str) else default


def _str_list(value: Any) -> List[str]:
    """Keep only the string items of a list value."""
    return [item for item in value if isinstance(item, str)]


@dataclass
class Message:
    """One turn of the conversation."""

    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message | None":
        role = data.get("role")
        content = data.get("content")
        if role not in ("user", "assistant") or not isinstance(content, str):
            return None
        return cls(role=role, content=content)


@dataclass
class DealMemory:
    """Sales-relevant facts accumulated across a session."""

    customer_name: str = ""
    company: str = ""
    industry: str = ""
    pain_points: List[str] = field(default_factory=list)
    budget: str = ""
    timeline: str = ""
    objections: List[str] = field(default_factory=list)
    next_steps: List[str] = field(default_factory=list)

    STRING_FIELDS = {
        "customerName": "customer_name",
        "company": "company",
        "industry": "industry",
        "budget": "budget",
        "timeline": "timeline",
    }
    LIST_FIELDS = {
        "painPoints": "pain_points",
        "objections": "objections",
        "nextSteps": "next_steps",
    }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customerName": self.customer_name,
            "company": self.company,
            "industry": self.industry,
            "painPoints": list(self.pain_points),
            "budget": self.budget,
            "timeline": self.timeline,
            "objections": list(self.objections),
            "nextSteps": list(self.next_steps),
        }

    def merge(self, partial: Mapping[str, Any]) -> "DealMemory":
        """Return a copy where each field present in ``partial`` replaces the current value.

        String fields are replaced only by non-blank strings, list fields only by
        non-empty lists. Anything absent, empty or of the wrong type keeps the
        current value, so a populated field never regresses to empty.
        """
        merged = replace(
            self,
            pain_points=list(self.pain_points),
            objections=list(self.objections),
            next_steps=list(self.next_steps),
        )
        for key, attr in self.STRING_FIELDS.items():
            value = partial.get(key)
            if isinstance(value, str) and value.strip():
                setattr(merged, attr, value)
        for key, attr in self.LIST_FIELDS.items():
            value = partial.get(key)
            if isinstance(value, list):
                items = _str_list(value)
                if items:
                    setattr(merged, attr, items)
        return merged

    @classmethod
    def from_dict(cls, data: Any) -> "DealMemory":
        if not isinstance(data, Mapping):
            return cls()
        return cls().merge(data)


@dataclass
class ActionItem:
    owner: Owner
    item: str

    def to_dict(self) -> Dict[str, str]:
        return {"owner": self.owner, "item": self.item}

    @classmethod
    def from_dict(cls, data: Any) -> "ActionItem | None":
        """Build an ActionItem from model output; unknown owners default to Rep."""
        if not isinstance(data, Mapping):
            return None
        item = data.get("item")
        if not isinstance(item, str) or not item.strip():
            return None
        owner = data.get("owner")
        return cls(owner=owner if owner in OWNERS else "Rep", item=item.strip())


@dataclass
class FinalResult:
    """Post-call output: summary bullets, action items and follow-up email."""

    summary_bullets: List[str] = field(default_factory=list)
    action_items: List[ActionItem] = field(default_factory=list)
    followup_email: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summaryBullets": list(self.summary_bullets),
            "actionItems": [a.to_dict() for a in self.action_items],
            "followupEmail": self.followup_email,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "FinalResult | None":
        if not isinstance(data, Mapping):
            return None
        bullets = data.get("summaryBullets")
        items = data.get("actionItems")
        return cls(
            summary_bullets=_str_list(bullets) if isinstance(bullets, list) else [],
            action_items=[
                a for a in (ActionItem.from_dict(i) for i in items) if a is not None
            ] if isinstance(items, list) else [],
            followup_email=_str_or(data.get("followupEmail"), ""),
        )


@dataclass
class AgentState:
    """Everything persisted for one session."""

    messages: List[Message] = field(default_factory=list)
    deal_memory: DealMemory = field(default_factory=DealMemory)
    rolling_summary: str = ""
    user_turn_count: int = 0
    final: FinalResult | None = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "messages": [m.to_dict() for m in self.messages],
            "dealMemory": self.deal_memory.to_dict(),
            "rollingSummary": self.rolling_summary,
            "userTurnCount": self.user_turn_count,
        }
        if self.final is not None:
            data["final"] = self.final.to_dict()
        return data

    def apply_extraction(self, partial: Mapping[str, Any]) -> None:
        """Merge an extracted deal memory (plus optional rollingSummary) into this state."""
        self.deal_memory = self.deal_memory.merge(partial)
        summary = partial.get("rollingSummary")
        if isinstance(summary, str) and summary.strip():
            self.rolling_summary = summary.strip()

    @classmethod
    def from_dict(cls, data: Any) -> "AgentState":
        """Build state from a stored record, defaulting each missing or malformed field."""
        if not isinstance(data, Mapping):
            return cls()
        raw_messages = data.get("messages")
        messages: List[Message] = []
        if isinstance(raw_messages, list):
            for raw in raw_messages:
                msg = Message.from_dict(raw) if isinstance(raw, Mapping) else None
                if msg is not None:
                    messages.append(msg)
        count = data.get("userTurnCount")
        return cls(
            messages=messages,
            deal_memory=DealMemory.from_dict(data.get("dealMemory")),
            rolling_summary=_str_or(data.get("rollingSummary"), ""),
            user_turn_count=count if isinstance(count, int) and not isinstance(count, bool) else 0,
            final=FinalResult.from_dict(data.get("final")),
        )
