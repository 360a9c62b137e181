from __future__ import annotations

import json
import logging
import random
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

from .models import ExperimentDefinition, Variant
from .store import UserNotFoundError, UserRecord, UserStore

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")
GENERIC_EVENT_REMINDER_EXPERIMENT = "event_reminder_generic"


@dataclass(frozen=True)
class RenderedContent:
    title: str
    body: str
    experiment_id: str | None = None
    variant_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.title and not self.body


EMPTY_CONTENT = RenderedContent(title="", body="")


def render_template(template: str, params: Mapping[str, str]) -> str:
    """Replace every ``{name}`` with ``params[name]``; unknown names stay verbatim."""

    def _substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in params:
            return str(params[name])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_substitute, template)


def effective_weights(experiment: ExperimentDefinition) -> list[float]:
    fallback = 100.0 / len(experiment.variants)
    return [fallback if variant.weight is None else float(variant.weight) for variant in experiment.variants]


def draw_variant(experiment: ExperimentDefinition, r: float) -> str:
    """Pick the first variant whose cumulative weight exceeds ``r`` in ``[0, 100)``."""
    cumulative = 0.0
    for variant, weight in zip(experiment.variants, effective_weights(experiment)):
        cumulative += weight
        if cumulative > r:
            return variant.variant_id
    return experiment.default_variant_id


def _render_variant(
    variant: Variant,
    params: Mapping[str, str],
    *,
    experiment_id: str,
) -> RenderedContent:
    title = render_template(variant.title, params)
    if variant.emoji:
        title = f"{variant.emoji} {title}"
    return RenderedContent(
        title=title,
        body=render_template(variant.body, params),
        experiment_id=experiment_id,
        variant_id=variant.variant_id,
    )


def _default_definitions() -> list[ExperimentDefinition]:
    raw = [
        {
            "experiment_id": "event_reminder_24h",
            "notification_type": "event_reminder",
            "default_variant_id": "control",
            "variants": [
                {
                    "variant_id": "control",
                    "title": "活動提醒",
                    "body": "您即將參加的活動「{eventTitle}」將在明天 {eventTime} 開始，別忘了準時出席喔！",
                },
                {
                    "variant_id": "variant",
                    "emoji": "🍽️",
                    "title": "活動提醒",
                    "body": "準備好了嗎？「{eventTitle}」明天 {eventTime} 見！😋",
                },
            ],
        },
        {
            "experiment_id": "event_reminder_2h",
            "notification_type": "event_reminder",
            "default_variant_id": "control",
            "variants": [
                {
                    "variant_id": "control",
                    "title": "活動即將開始",
                    "body": "「{eventTitle}」將在 {hoursLeft} 小時後（{eventTime}）開始。",
                },
                {
                    "variant_id": "variant",
                    "emoji": "⏰",
                    "title": "活動快開始了",
                    "body": "「{eventTitle}」還有 {hoursLeft} 小時就要開始，準備出發吧！",
                },
            ],
        },
        {
            "experiment_id": GENERIC_EVENT_REMINDER_EXPERIMENT,
            "notification_type": "event_reminder",
            "default_variant_id": "control",
            "variants": [
                {
                    "variant_id": "control",
                    "title": "活動提醒",
                    "body": "「{eventTitle}」將於 {eventTime} 開始。",
                },
            ],
        },
        {
            "experiment_id": "new_message",
            "notification_type": "new_message",
            "default_variant_id": "control",
            "variants": [
                {
                    "variant_id": "control",
                    "title": "{senderName}",
                    "body": "{messagePreview}",
                },
                {
                    "variant_id": "variant",
                    "emoji": "💬",
                    "title": "新訊息",
                    "body": "{senderName}：{messagePreview}",
                },
            ],
        },
        {
            "experiment_id": "match",
            "notification_type": "match",
            "default_variant_id": "control",
            "variants": [
                {
                    "variant_id": "control",
                    "title": "新配對",
                    "body": "你與 {partnerName} 配對成功。",
                },
                {
                    "variant_id": "variant",
                    "emoji": "🎉",
                    "title": "配對成功！",
                    "body": "你與 {partnerName} 配對成功！現在就去打個招呼吧！👋",
                },
            ],
        },
        {
            "experiment_id": "rating",
            "notification_type": "rating",
            "default_variant_id": "control",
            "variants": [
                {
                    "variant_id": "control",
                    "title": "評分您的體驗",
                    "body": "請為您最近的體驗進行評分。",
                },
                {
                    "variant_id": "variant",
                    "emoji": "⭐",
                    "title": "體驗如何？",
                    "body": "為您的體驗評分，幫助我們做得更好！📝",
                },
            ],
        },
        {
            "experiment_id": "system",
            "notification_type": "system",
            "default_variant_id": "control",
            "variants": [
                {"variant_id": "control", "title": "系統通知", "body": "{message}"},
            ],
        },
    ]
    return [ExperimentDefinition.model_validate(item) for item in raw]


class ExperimentCatalog:
    def __init__(self, definitions: Iterable[ExperimentDefinition]) -> None:
        self._definitions: dict[str, ExperimentDefinition] = {}
        for definition in definitions:
            self._definitions[definition.experiment_id] = definition

    @classmethod
    def default(cls) -> "ExperimentCatalog":
        return cls(_default_definitions())

    @classmethod
    def from_settings_path(cls, path: str) -> "ExperimentCatalog":
        """Defaults overlaid with definitions from a JSON list at ``path``."""
        definitions = _default_definitions()
        normalized = path.strip()
        if not normalized:
            return cls(definitions)
        payload = json.loads(Path(normalized).read_text(encoding="utf-8"))
        if isinstance(payload, dict):
            payload = payload.get("experiments", [])
        if not isinstance(payload, list):
            raise ValueError("experiment file must contain a list of definitions")
        overrides = [ExperimentDefinition.model_validate(item) for item in payload]
        logger.info("loaded %d experiment definitions from %s", len(overrides), normalized)
        return cls([*definitions, *overrides])

    def get(self, experiment_id: str) -> ExperimentDefinition | None:
        return self._definitions.get(experiment_id)

    def definitions(self) -> list[ExperimentDefinition]:
        return [self._definitions[key] for key in sorted(self._definitions)]

    def event_reminder_experiment_id(self, lead_time_label: str) -> str:
        candidate = f"event_reminder_{lead_time_label}"
        if candidate in self._definitions:
            return candidate
        return GENERIC_EVENT_REMINDER_EXPERIMENT


class ContentSelector:
    def __init__(
        self,
        *,
        catalog: ExperimentCatalog,
        user_store: UserStore,
        rng: random.Random | None = None,
    ) -> None:
        self._catalog = catalog
        self._user_store = user_store
        self._rng = rng or random.Random()

    @property
    def catalog(self) -> ExperimentCatalog:
        return self._catalog

    def _variant_id_for(self, experiment: ExperimentDefinition, user: UserRecord) -> str:
        existing = user.variant_assignments.get(experiment.experiment_id)
        if existing is not None:
            return existing
        drawn = draw_variant(experiment, self._rng.random() * 100.0)
        try:
            return self._user_store.assign_variant(user.user_id, experiment.experiment_id, drawn)
        except UserNotFoundError:
            logger.warning(
                "variant assignment not persisted for missing user user_id=%s experiment_id=%s",
                user.user_id,
                experiment.experiment_id,
            )
            return drawn

    def select(
        self,
        experiment_id: str,
        user: UserRecord,
        params: Mapping[str, str] | None = None,
    ) -> RenderedContent:
        render_params = dict(params or {})
        experiment = self._catalog.get(experiment_id)
        if experiment is None:
            logger.warning("unknown experiment_id=%s; using empty content", experiment_id)
            return EMPTY_CONTENT

        variant = experiment.variant(self._variant_id_for(experiment, user))
        if variant is None:
            variant = experiment.variant(experiment.default_variant_id)
        if variant is None:
            logger.warning(
                "experiment_id=%s has no usable variant for user_id=%s; using empty content",
                experiment_id,
                user.user_id,
            )
            return RenderedContent(title="", body="", experiment_id=experiment_id)
        return _render_variant(variant, render_params, experiment_id=experiment_id)
