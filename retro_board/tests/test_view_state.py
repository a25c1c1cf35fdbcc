from core.board import add_note, default_categories, delete_note
from core.view_state import ViewState


def test_composer_and_chat_toggle():
    view = ViewState()
    assert view.as_dict() == {
        "type": "view",
        "active_category": None,
        "active_note": None,
        "chat_open": True,
    }
    view.open_composer("2")
    assert view.active_category == "2"
    view.close_composer()
    view.toggle_chat()
    assert view.as_dict()["active_category"] is None
    assert view.as_dict()["chat_open"] is False


def test_comments_panel_follows_the_board():
    cats = add_note(default_categories(), "1", "x")
    note_id = cats[0].notes[0].id
    view = ViewState()

    assert view.open_comments(cats, "1", "missing") is False
    assert view.active_note is None
    assert view.open_comments(cats, "1", note_id) is True
    assert view.as_dict()["active_note"] == {"category_id": "1", "note_id": note_id}

    view.prune(cats)
    assert view.active_note == ("1", note_id)
    view.prune(delete_note(cats, "1", note_id))
    assert view.active_note is None


def test_note_deleted_only_clears_matching_note():
    view = ViewState()
    view.active_note = ("1", "n1")
    view.note_deleted("n2")
    assert view.active_note == ("1", "n1")
    view.note_deleted("n1")
    assert view.active_note is None
