"""Retrospective board document and the pure transforms applied to it.

The whole ``List[Category]`` tree is the shared document. Every mutation is
expressed as ``next = f(current, ...)``: functions never mutate their input and
return the very same list object when nothing changes, so callers can skip the
publish on a no-op with an identity check.
"""
from datetime import datetime, timezone
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

MIN_SCALE = 0.5
MAX_SCALE = 2.0
SCALE_STEP = 0.1
DEFAULT_SCALE = 1.0

DEFAULT_CATEGORIES = [
    {"id": "1", "title": "Whats working?", "color": "bg-yellow-200"},
    {"id": "2", "title": "What improvements should we do?", "color": "bg-green-400"},
    {"id": "3", "title": "Whats not working?", "color": "bg-red-200"},
    {"id": "4", "title": "Helpfull last sprint improvements?", "color": "bg-blue-300"},
]


def new_id() -> str:
    return uuid4().hex


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _unique(values: Any) -> List[str]:
    seen: List[str] = []
    for value in values or []:
        value = str(value)
        if value not in seen:
            seen.append(value)
    return seen


class Comment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    author: str
    timestamp: str


class Note(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    text: str
    likes: int = Field(default=0, ge=0)
    dislikes: int = Field(default=0, ge=0)
    comments: List[Comment] = Field(default_factory=list)
    liked_by: List[str] = Field(default_factory=list, alias="likedBy")
    disliked_by: List[str] = Field(default_factory=list, alias="dislikedBy")

    @model_validator(mode="before")
    @classmethod
    def _normalize_reactions(cls, data: Any) -> Any:
        # Counters are derived from membership; a user in both lists keeps the like.
        if not isinstance(data, dict):
            return data
        data = dict(data)
        liked_key = "likedBy" if "likedBy" in data or "liked_by" not in data else "liked_by"
        disliked_key = (
            "dislikedBy" if "dislikedBy" in data or "disliked_by" not in data else "disliked_by"
        )
        liked = _unique(data.get(liked_key))
        disliked = [user for user in _unique(data.get(disliked_key)) if user not in liked]
        data[liked_key] = liked
        data[disliked_key] = disliked
        data["likes"] = len(liked)
        data["dislikes"] = len(disliked)
        return data


class Category(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    color: str
    notes: List[Note] = Field(default_factory=list)


_categories_adapter = TypeAdapter(List[Category])


def load_categories(raw: Any) -> List[Category]:
    """Validate a wire document (list of dicts) into categories.

    Raises ``pydantic.ValidationError`` on malformed input; callers at the
    protocol boundary turn that into an error message.
    """
    return _categories_adapter.validate_python(raw)


def dump_categories(categories: List[Category]) -> List[dict]:
    return [category.model_dump(by_alias=True) for category in categories]


def default_categories() -> List[Category]:
    return [Category(**seed) for seed in DEFAULT_CATEGORIES]


def _is_blank(text: Optional[str]) -> bool:
    return not (text or "").strip()


def _find_category(categories: List[Category], category_id: str) -> Optional[Category]:
    for category in categories:
        if category.id == category_id:
            return category
    return None


def find_note(categories: List[Category], category_id: str, note_id: str) -> Optional[Note]:
    category = _find_category(categories, category_id)
    if category is None:
        return None
    for note in category.notes:
        if note.id == note_id:
            return note
    return None


def _replace_notes(categories: List[Category], category_id: str, notes: List[Note]) -> List[Category]:
    return [
        category.model_copy(update={"notes": notes}) if category.id == category_id else category
        for category in categories
    ]


def add_note(categories: List[Category], category_id: str, text: str) -> List[Category]:
    if _is_blank(text):
        return categories
    category = _find_category(categories, category_id)
    if category is None:
        return categories
    note = Note(id=new_id(), text=text)
    return _replace_notes(categories, category_id, [*category.notes, note])


def delete_note(categories: List[Category], category_id: str, note_id: str) -> List[Category]:
    category = _find_category(categories, category_id)
    if category is None:
        return categories
    remaining = [note for note in category.notes if note.id != note_id]
    if len(remaining) == len(category.notes):
        return categories
    return _replace_notes(categories, category_id, remaining)


def replace_note(categories: List[Category], category_id: str, updated: Note) -> List[Category]:
    """Swap the note with ``updated.id`` in place; no-op when it is gone."""
    category = _find_category(categories, category_id)
    if category is None:
        return categories
    if not any(note.id == updated.id for note in category.notes):
        return categories
    notes = [updated if note.id == updated.id else note for note in category.notes]
    return _replace_notes(categories, category_id, notes)


def add_comment(
    categories: List[Category],
    category_id: str,
    note_id: str,
    text: str,
    author: str,
) -> List[Category]:
    if _is_blank(text):
        return categories
    note = find_note(categories, category_id, note_id)
    if note is None:
        return categories
    comment = Comment(id=new_id(), text=text, author=author, timestamp=now_iso())
    updated = note.model_copy(update={"comments": [*note.comments, comment]})
    return replace_note(categories, category_id, updated)


def move_note(
    categories: List[Category],
    source_category_id: str,
    target_category_id: str,
    note_id: str,
) -> List[Category]:
    if source_category_id == target_category_id:
        return categories
    target = _find_category(categories, target_category_id)
    note = find_note(categories, source_category_id, note_id)
    if target is None or note is None:
        return categories
    result = []
    for category in categories:
        if category.id == source_category_id:
            notes = [item for item in category.notes if item.id != note_id]
            category = category.model_copy(update={"notes": notes})
        elif category.id == target_category_id:
            category = category.model_copy(update={"notes": [*category.notes, note]})
        result.append(category)
    return result


def clamp_scale(scale: float) -> float:
    return round(min(max(float(scale), MIN_SCALE), MAX_SCALE), 1)


def zoom_in(scale: float) -> float:
    return clamp_scale(scale + SCALE_STEP)


def zoom_out(scale: float) -> float:
    return clamp_scale(scale - SCALE_STEP)


def reset_zoom() -> float:
    return DEFAULT_SCALE
