import pytest

from parlor.session.activations import (
    Activation,
    ActivationStore,
    ActivationTrigger,
    Completion,
    build_completion_map,
    get_phantom_insertions,
)


def test_activation_lifecycle_persists_on_completion(tmp_path) -> None:
    store = ActivationStore(tmp_path)
    activation = store.start_activation("bot", "c1", ActivationTrigger(type="mention", anchor_message_id="1"))

    store.add_completion(activation.id, "<search>{}</search>")
    store.add_completion(activation.id, "Done.", ["m1"])
    assert list((tmp_path / "activations").rglob("*.json")) == []

    path = store.complete_activation(activation.id)

    assert path is not None and path.exists()
    assert store.get_active(activation.id) is None
    [loaded] = store.load_activations("bot", "c1", ["1", "m1"])
    assert [c.is_phantom for c in loaded.completions] == [True, False]
    assert loaded.trigger.anchor_message_id == "1"
    assert loaded.ended_at is not None


def test_add_completion_to_unknown_activation_raises(tmp_path) -> None:
    store = ActivationStore(tmp_path)
    with pytest.raises(KeyError):
        store.add_completion("missing", "text")


def test_complete_unknown_activation_is_a_no_op(tmp_path) -> None:
    assert ActivationStore(tmp_path).complete_activation("missing") is None


def test_load_skips_activations_whose_messages_are_gone(tmp_path) -> None:
    store = ActivationStore(tmp_path)
    gone = store.start_activation("bot", "c1", ActivationTrigger(type="mention"))
    store.add_completion(gone.id, "old", ["m1"])
    store.complete_activation(gone.id)
    kept = store.start_activation("bot", "c1", ActivationTrigger(type="reply"))
    store.add_completion(kept.id, "new", ["m2"])
    store.complete_activation(kept.id)

    loaded = store.load_activations("bot", "c1", ["m2"])
    assert [a.id for a in loaded] == [kept.id]


def test_remove_activations_for_message(tmp_path) -> None:
    store = ActivationStore(tmp_path)
    activation = store.start_activation("bot", "c1", ActivationTrigger(type="mention"))
    store.add_completion(activation.id, "a", ["m1", "m2"])
    path = store.complete_activation(activation.id)

    assert store.remove_activations_for_message("bot", "c1", "m1") == 1
    assert path.exists()
    assert store.remove_activations_for_message("bot", "c1", "m2") == 1
    assert not path.exists()
    assert store.remove_activations_for_message("bot", "c1", "m3") == 0


def test_phantom_anchor_advances_past_sent_messages() -> None:
    activation = Activation(
        id="a",
        bot_id="bot",
        channel_id="c1",
        trigger=ActivationTrigger(type="mention", anchor_message_id="1"),
        completions=[
            Completion(index=0, text="phantom one"),
            Completion(index=1, text="sent", sent_message_ids=["5"]),
            Completion(index=2, text="phantom two"),
        ],
    )

    insertions = get_phantom_insertions([activation], ["1", "5"])

    assert [c.text for c in insertions["1"]] == ["phantom one"]
    assert [c.text for c in insertions["5"]] == ["phantom two"]
    assert build_completion_map([activation])["5"][1].index == 1
