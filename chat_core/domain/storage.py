from typing import List, Optional, Protocol

from .models import ChatMessage


class CredentialStore(Protocol):
    def load(self) -> Optional[str]:
        ...

    def save(self, value: str) -> None:
        ...

    def clear(self) -> None:
        ...


class HistoryStore(Protocol):
    def load(self) -> List[ChatMessage]:
        ...

    def save(self, value: List[ChatMessage]) -> None:
        ...

    def clear(self) -> None:
        ...
