import pytest
from pydantic import ValidationError

from core.board import (
    Note,
    add_comment,
    add_note,
    default_categories,
    delete_note,
    dump_categories,
    find_note,
    load_categories,
    move_note,
    reset_zoom,
    zoom_in,
    zoom_out,
)
from core.reactions import Reaction, react


def board_with_note(text="Great teamwork"):
    cats = add_note(default_categories(), "1", text)
    return cats, cats[0].notes[0]


def test_default_categories_seed():
    cats = default_categories()
    assert [c.id for c in cats] == ["1", "2", "3", "4"]
    assert cats[0].title == "Whats working?"
    assert cats[2].title == "Whats not working?"
    assert all(c.notes == [] for c in cats)


def test_add_note_appends_fresh_note():
    cats, note = board_with_note()
    assert note.text == "Great teamwork"
    assert (note.likes, note.dislikes) == (0, 0)
    assert note.comments == [] and note.liked_by == [] and note.disliked_by == []
    cats2 = add_note(cats, "1", "Second")
    assert [n.text for n in cats2[0].notes] == ["Great teamwork", "Second"]
    assert cats2[0].notes[0].id != cats2[0].notes[1].id


def test_add_note_does_not_mutate_input():
    cats = default_categories()
    add_note(cats, "1", "hello")
    assert cats[0].notes == []


@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
def test_add_note_blank_text_is_noop(text):
    cats = default_categories()
    assert add_note(cats, "1", text) is cats


def test_add_note_unknown_category_is_noop():
    cats = default_categories()
    assert add_note(cats, "99", "hello") is cats


def test_delete_note_removes_exactly_one():
    cats, first = board_with_note("one")
    cats = add_note(cats, "1", "two")
    cats = add_note(cats, "2", "other")
    result = delete_note(cats, "1", first.id)
    assert [n.text for n in result[0].notes] == ["two"]
    assert result[1] is cats[1]
    assert [n.text for n in result[1].notes] == ["other"]


def test_delete_missing_note_is_noop():
    cats, _ = board_with_note()
    assert delete_note(cats, "1", "missing") is cats
    assert delete_note(cats, "missing", "missing") is cats


def test_add_comment_appends_with_author_and_timestamp():
    cats, note = board_with_note()
    cats = add_comment(cats, "1", note.id, "Agreed!", "Alice")
    cats = add_comment(cats, "1", note.id, "Me too", "Bob")
    comments = find_note(cats, "1", note.id).comments
    assert [(c.text, c.author) for c in comments] == [("Agreed!", "Alice"), ("Me too", "Bob")]
    assert comments[0].timestamp.endswith("+00:00")
    assert comments[0].id != comments[1].id


def test_add_comment_noops():
    cats, note = board_with_note()
    assert add_comment(cats, "1", note.id, "  ", "Alice") is cats
    assert add_comment(cats, "1", "missing", "hi", "Alice") is cats
    assert add_comment(cats, "2", note.id, "hi", "Alice") is cats


def test_move_note_preserves_full_state():
    cats, note = board_with_note()
    cats = react(cats, "1", note.id, "u1", Reaction.LIKE)
    cats = add_comment(cats, "1", note.id, "Agreed!", "Alice")
    before = find_note(cats, "1", note.id)

    moved = move_note(cats, "1", "3", note.id)

    assert find_note(moved, "1", note.id) is None
    after = find_note(moved, "3", note.id)
    assert after == before
    assert after.model_dump() == before.model_dump()
    assert moved[2].notes[-1].id == note.id


def test_move_note_appends_after_existing_target_notes():
    cats, note = board_with_note()
    cats = add_note(cats, "2", "already there")
    moved = move_note(cats, "1", "2", note.id)
    assert [n.text for n in moved[1].notes] == ["already there", "Great teamwork"]


def test_move_note_noops():
    cats, note = board_with_note()
    assert move_note(cats, "1", "1", note.id) is cats
    assert move_note(cats, "1", "9", note.id) is cats
    assert move_note(cats, "9", "2", note.id) is cats
    assert move_note(cats, "2", "3", note.id) is cats


def test_dump_uses_wire_names_and_load_round_trips():
    cats, note = board_with_note()
    cats = react(cats, "1", note.id, "u1", Reaction.DISLIKE)
    raw = dump_categories(cats)
    dumped = raw[0]["notes"][0]
    assert dumped["dislikedBy"] == ["u1"]
    assert "disliked_by" not in dumped
    assert dump_categories(load_categories(raw)) == raw


def test_load_normalizes_counters_and_overlap():
    raw = [
        {
            "id": "1",
            "title": "Whats working?",
            "color": "bg-yellow-200",
            "notes": [
                {
                    "id": "n1",
                    "text": "x",
                    "likes": 7,
                    "dislikes": 3,
                    "comments": [],
                    "likedBy": ["u1", "u1", "u2"],
                    "dislikedBy": ["u2", "u3"],
                }
            ],
        }
    ]
    note = load_categories(raw)[0].notes[0]
    assert note.liked_by == ["u1", "u2"]
    assert note.disliked_by == ["u3"]
    assert (note.likes, note.dislikes) == (2, 1)


def test_load_accepts_notes_without_reaction_lists():
    raw = [{"id": "1", "title": "t", "color": "c", "notes": [{"id": "n", "text": "x"}]}]
    note = load_categories(raw)[0].notes[0]
    assert note.liked_by == [] and note.likes == 0


def test_load_rejects_malformed_documents():
    with pytest.raises(ValidationError):
        load_categories([{"id": "1", "notes": "nope"}])
    with pytest.raises(ValidationError):
        load_categories({"id": "1"})


def test_note_is_frozen():
    note = Note(id="n", text="x")
    with pytest.raises(ValidationError):
        note.text = "y"


def test_zoom_steps_and_clamps():
    assert zoom_in(1.0) == 1.1
    assert zoom_out(1.0) == 0.9
    assert zoom_in(2.0) == 2.0
    assert zoom_out(0.5) == 0.5
    scale = 1.0
    for _ in range(20):
        scale = zoom_in(scale)
    assert scale == 2.0
    assert reset_zoom() == 1.0
