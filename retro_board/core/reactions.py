"""Like/dislike state machine for one (note, user) pair.

A user is in exactly one of three states per note: neutral, liked or
disliked. ``toggle_reaction`` is total over every (state, intent) pair.
Re-applying the same intent returns to neutral; that toggle is the intended
behaviour of the reaction buttons, not an idempotent "set".
"""
from enum import Enum
from typing import Dict, List, Tuple

from core.board import Category, Note, find_note, replace_note


class Reaction(str, Enum):
    LIKE = "like"
    DISLIKE = "dislike"


class ReactionState(str, Enum):
    NEUTRAL = "neutral"
    LIKED = "liked"
    DISLIKED = "disliked"


TRANSITIONS: Dict[Tuple[ReactionState, Reaction], ReactionState] = {
    (ReactionState.NEUTRAL, Reaction.LIKE): ReactionState.LIKED,
    (ReactionState.NEUTRAL, Reaction.DISLIKE): ReactionState.DISLIKED,
    (ReactionState.LIKED, Reaction.LIKE): ReactionState.NEUTRAL,
    (ReactionState.LIKED, Reaction.DISLIKE): ReactionState.DISLIKED,
    (ReactionState.DISLIKED, Reaction.DISLIKE): ReactionState.NEUTRAL,
    (ReactionState.DISLIKED, Reaction.LIKE): ReactionState.LIKED,
}


def parse_intent(value) -> Reaction:
    if isinstance(value, Reaction):
        return value
    cleaned = (value or "").strip().lower() if isinstance(value, str) else ""
    try:
        return Reaction(cleaned)
    except ValueError:
        raise ValueError(f"Invalid reaction: {value!r}") from None


def reaction_state(note: Note, user_id: str) -> ReactionState:
    if user_id in note.liked_by:
        return ReactionState.LIKED
    if user_id in note.disliked_by:
        return ReactionState.DISLIKED
    return ReactionState.NEUTRAL


def _with_state(note: Note, user_id: str, state: ReactionState) -> Note:
    liked: List[str] = [user for user in note.liked_by if user != user_id]
    disliked: List[str] = [user for user in note.disliked_by if user != user_id]
    if state is ReactionState.LIKED:
        liked.append(user_id)
    elif state is ReactionState.DISLIKED:
        disliked.append(user_id)
    return note.model_copy(
        update={
            "liked_by": liked,
            "disliked_by": disliked,
            "likes": len(liked),
            "dislikes": len(disliked),
        }
    )


def toggle_reaction(note: Note, user_id: str, intent: Reaction) -> Note:
    current = reaction_state(note, user_id)
    return _with_state(note, user_id, TRANSITIONS[(current, Reaction(intent))])


def react(
    categories: List[Category],
    category_id: str,
    note_id: str,
    user_id: str,
    intent: Reaction,
) -> List[Category]:
    note = find_note(categories, category_id, note_id)
    if note is None or not user_id:
        return categories
    return replace_note(categories, category_id, toggle_reaction(note, user_id, intent))
