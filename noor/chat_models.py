from dataclasses import dataclass
from typing import Any, Dict, Literal

Role = Literal["user", "assistant"]

ROLES = ("user", "assistant")


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}
