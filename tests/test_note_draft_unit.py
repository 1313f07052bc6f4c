from dictanote import NoteDraft, SavedNote


def make_draft():
    created: list[tuple[str, str | None]] = []
    draft = NoteDraft(lambda content, folder_id: created.append((content, folder_id)))
    return draft, created


def test_new_draft_shows_onboarding() -> None:
    draft, _ = make_draft()
    assert draft.content == ""
    assert draft.selected_folder_id is None
    assert draft.onboarding_visible is True


def test_typing_hides_onboarding_and_clearing_shows_it_again() -> None:
    draft, _ = make_draft()
    draft.start_editor()
    assert draft.onboarding_visible is False

    draft.set_content("a")
    assert draft.onboarding_visible is False

    draft.set_content("")
    assert draft.onboarding_visible is True


def test_onboarding_never_visible_with_content() -> None:
    draft, _ = make_draft()
    draft.set_content("typed without opening the editor")
    assert draft.onboarding_visible is False


def test_transcript_overwrites_content_and_hides_onboarding() -> None:
    draft, _ = make_draft()
    draft.set_content("typed")
    draft.receive_transcript("dictated")
    assert draft.content == "dictated"
    assert draft.onboarding_visible is False

    draft.receive_transcript("")
    assert draft.onboarding_visible is False


def test_save_empty_draft_is_a_no_op() -> None:
    draft, created = make_draft()
    draft.start_editor()
    draft.select_folder("f1")

    assert draft.save() is None

    assert created == []
    assert draft.content == ""
    assert draft.selected_folder_id == "f1"
    assert draft.onboarding_visible is False


def test_save_hands_content_over_once_then_resets() -> None:
    draft, created = make_draft()
    draft.set_content("hello world")
    draft.select_folder("f1")

    note = draft.save()

    assert note == SavedNote("hello world", "f1")
    assert created == [("hello world", "f1")]
    assert draft.content == ""
    assert draft.selected_folder_id is None
    assert draft.onboarding_visible is True

    assert draft.save() is None
    assert created == [("hello world", "f1")]


def test_save_without_folder() -> None:
    draft, created = make_draft()
    draft.receive_transcript("dictated note")
    draft.save()
    assert created == [("dictated note", None)]


def test_reset() -> None:
    draft, _ = make_draft()
    draft.set_content("text")
    draft.select_folder("f2")
    draft.reset()
    assert (draft.content, draft.selected_folder_id, draft.onboarding_visible) == ("", None, True)
