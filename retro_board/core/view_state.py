from typing import List, Optional, Tuple

from core.board import Category, find_note


class ViewState:
    """Per-participant UI state around the board: never replicated."""

    def __init__(self) -> None:
        self.active_category: Optional[str] = None
        self.active_note: Optional[Tuple[str, str]] = None
        self.chat_open = True

    def open_composer(self, category_id: str) -> None:
        self.active_category = category_id

    def close_composer(self) -> None:
        self.active_category = None

    def open_comments(self, categories: List[Category], category_id: str, note_id: str) -> bool:
        if find_note(categories, category_id, note_id) is None:
            return False
        self.active_note = (category_id, note_id)
        return True

    def close_comments(self) -> None:
        self.active_note = None

    def toggle_chat(self) -> None:
        self.chat_open = not self.chat_open

    def note_deleted(self, note_id: str) -> None:
        if self.active_note and self.active_note[1] == note_id:
            self.active_note = None

    def prune(self, categories: List[Category]) -> None:
        if self.active_note and find_note(categories, *self.active_note) is None:
            self.active_note = None

    def as_dict(self) -> dict:
        active_note = None
        if self.active_note:
            active_note = {"category_id": self.active_note[0], "note_id": self.active_note[1]}
        return {
            "type": "view",
            "active_category": self.active_category,
            "active_note": active_note,
            "chat_open": self.chat_open,
        }
