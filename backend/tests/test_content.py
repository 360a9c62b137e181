from __future__ import annotations

import json
import random
from pathlib import Path

from event_notifier.content import (
    ContentSelector,
    ExperimentCatalog,
    draw_variant,
    effective_weights,
    render_template,
)
from event_notifier.models import ExperimentDefinition
from event_notifier.store import InMemoryNotificationStore, UserRecord


class _FixedRandom(random.Random):
    def __init__(self, value: float) -> None:
        super().__init__(0)
        self._value = value
        self.calls = 0

    def random(self) -> float:
        self.calls += 1
        return self._value


def _three_way_experiment(weights: tuple[float | None, float | None, float | None] = (34, 33, 33)) -> ExperimentDefinition:
    return ExperimentDefinition.model_validate(
        {
            "experiment_id": "dinner_copy",
            "notification_type": "event_reminder",
            "default_variant_id": "a",
            "variants": [
                {"variant_id": "a", "title": "A {eventTitle}", "body": "body a", "weight": weights[0]},
                {"variant_id": "b", "title": "B {eventTitle}", "body": "body b {eventTitle}", "weight": weights[1], "emoji": "🍽️"},
                {"variant_id": "c", "title": "C {eventTitle}", "body": "body c", "weight": weights[2]},
            ],
        }
    )


def _selector(store: InMemoryNotificationStore, *, r: float, experiment: ExperimentDefinition | None = None) -> ContentSelector:
    catalog = ExperimentCatalog([experiment or _three_way_experiment()])
    return ContentSelector(catalog=catalog, user_store=store, rng=_FixedRandom(r / 100.0))


def test_weighted_draw_picks_second_variant_for_midpoint() -> None:
    experiment = _three_way_experiment()
    assert draw_variant(experiment, 50) == "b"
    assert draw_variant(experiment, 0) == "a"
    assert draw_variant(experiment, 33.99) == "a"
    assert draw_variant(experiment, 99.99) == "c"


def test_weights_below_hundred_fall_back_to_default_variant() -> None:
    experiment = _three_way_experiment((10, 10, 10))
    assert draw_variant(experiment, 45) == "a"
    assert draw_variant(experiment, 15) == "b"


def test_omitted_weights_get_equal_share() -> None:
    assert effective_weights(_three_way_experiment((None, None, None))) == [100 / 3, 100 / 3, 100 / 3]
    assert effective_weights(_three_way_experiment((50, None, 10))) == [50.0, 100 / 3, 10.0]


def test_render_template_replaces_every_occurrence_and_keeps_unknown() -> None:
    rendered = render_template("{name} & {name} meet {place} at {time}", {"name": "Ann", "place": "Cafe"})
    assert rendered == "Ann & Ann meet Cafe at {time}"


def test_selection_persists_assignment_and_prefixes_emoji() -> None:
    store = InMemoryNotificationStore()
    store.upsert_user(UserRecord(user_id="U1", push_token="token-u1"))
    selector = _selector(store, r=50)

    content = selector.select("dinner_copy", store.get_user("U1"), {"eventTitle": "Hotpot"})

    assert content.variant_id == "b"
    assert content.title == "🍽️ B Hotpot"
    assert content.body == "body b Hotpot"
    assert store.get_user("U1").variant_assignments == {"dinner_copy": "b"}


def test_assignment_is_stable_across_calls() -> None:
    store = InMemoryNotificationStore()
    store.upsert_user(UserRecord(user_id="U1", push_token="token-u1"))
    first = _selector(store, r=50).select("dinner_copy", store.get_user("U1"), {})
    # A different draw must not change an existing assignment.
    second = _selector(store, r=99).select("dinner_copy", store.get_user("U1"), {})
    stale_view = _selector(store, r=5).select("dinner_copy", UserRecord(user_id="U1"), {})

    assert first.variant_id == second.variant_id == stale_view.variant_id == "b"


def test_existing_assignment_skips_the_draw() -> None:
    store = InMemoryNotificationStore()
    user = UserRecord(user_id="U1", variant_assignments={"dinner_copy": "c"})
    store.upsert_user(user)
    rng = _FixedRandom(0.0)
    selector = ContentSelector(catalog=ExperimentCatalog([_three_way_experiment()]), user_store=store, rng=rng)

    assert selector.select("dinner_copy", user, {}).variant_id == "c"
    assert rng.calls == 0


def test_stale_assignment_falls_back_to_default_variant() -> None:
    store = InMemoryNotificationStore()
    user = UserRecord(user_id="U1", variant_assignments={"dinner_copy": "retired"})
    store.upsert_user(user)

    content = _selector(store, r=50).select("dinner_copy", user, {"eventTitle": "Hotpot"})

    assert content.variant_id == "a"
    assert content.title == "A Hotpot"


def test_unknown_experiment_and_missing_default_return_empty_placeholder() -> None:
    store = InMemoryNotificationStore()
    user = UserRecord(user_id="U1")
    store.upsert_user(user)
    broken = ExperimentDefinition.model_validate(
        {
            "experiment_id": "broken",
            "notification_type": "system",
            "default_variant_id": "missing",
            "variants": [{"variant_id": "only", "title": "t", "body": "b", "weight": 0}],
        }
    )
    selector = ContentSelector(catalog=ExperimentCatalog([broken]), user_store=store, rng=_FixedRandom(0.5))

    assert selector.select("nope", user, {}).is_empty
    placeholder = selector.select("broken", user, {})
    assert placeholder.is_empty
    assert placeholder.variant_id is None


def test_default_catalog_covers_reminders_and_immediate_types() -> None:
    catalog = ExperimentCatalog.default()
    ids = {definition.experiment_id for definition in catalog.definitions()}
    assert {"event_reminder_24h", "event_reminder_2h", "new_message", "match", "rating", "system"} <= ids
    assert catalog.event_reminder_experiment_id("24h") == "event_reminder_24h"
    assert catalog.event_reminder_experiment_id("90m") == "event_reminder_generic"


def test_catalog_file_overrides_defaults(tmp_path: Path) -> None:
    path = tmp_path / "experiments.json"
    path.write_text(
        json.dumps(
            {
                "experiments": [
                    {
                        "experiment_id": "match",
                        "notification_type": "match",
                        "default_variant_id": "plain",
                        "variants": [{"variant_id": "plain", "title": "Match", "body": "You matched {partnerName}"}],
                    }
                ]
            }
        ),
        encoding="utf-8",
    )

    catalog = ExperimentCatalog.from_settings_path(str(path))

    match = catalog.get("match")
    assert match is not None
    assert [variant.variant_id for variant in match.variants] == ["plain"]
    assert catalog.get("event_reminder_24h") is not None
