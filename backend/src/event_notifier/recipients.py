from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Iterator, TypeVar

from .store import EventRecord, UserRecord, UserStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def chunked(items: list[T], size: int) -> Iterator[list[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for index in range(0, len(items), size):
        yield items[index : index + size]


@dataclass(frozen=True)
class Recipient:
    user: UserRecord
    push_token: str


@dataclass(frozen=True)
class SkippedRecipient:
    user_id: str
    reason: str


@dataclass(frozen=True)
class ResolvedRecipients:
    recipients: list[Recipient] = field(default_factory=list)
    skipped: list[SkippedRecipient] = field(default_factory=list)


class RecipientResolver:
    def __init__(self, *, user_store: UserStore, chunk_size: int = 10) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._user_store = user_store
        self._chunk_size = chunk_size

    def resolve(
        self,
        participant_ids: Iterable[str],
        *,
        category: str,
        event: EventRecord | None = None,
    ) -> ResolvedRecipients:
        ordered_ids: list[str] = []
        seen_ids: set[str] = set()
        for raw_id in participant_ids:
            user_id = str(raw_id).strip()
            if not user_id or user_id in seen_ids:
                continue
            seen_ids.add(user_id)
            ordered_ids.append(user_id)

        recipients: list[Recipient] = []
        skipped: list[SkippedRecipient] = []
        seen_tokens: set[str] = set()

        for chunk in chunked(ordered_ids, self._chunk_size):
            users = {user.user_id: user for user in self._user_store.get_users(chunk)}
            for user_id in chunk:
                user = users.get(user_id)
                if user is None:
                    skipped.append(SkippedRecipient(user_id=user_id, reason="user_not_found"))
                    continue
                if event is not None and not event.participant_opted_in(user_id):
                    skipped.append(SkippedRecipient(user_id=user_id, reason="event_opt_out"))
                    continue
                if not user.allows(category):
                    skipped.append(SkippedRecipient(user_id=user_id, reason="category_disabled"))
                    continue
                token = user.deliverable_token
                if token is None:
                    skipped.append(SkippedRecipient(user_id=user_id, reason="no_push_token"))
                    continue
                if token in seen_tokens:
                    skipped.append(SkippedRecipient(user_id=user_id, reason="duplicate_token"))
                    continue
                seen_tokens.add(token)
                recipients.append(Recipient(user=user, push_token=token))

        if skipped:
            logger.debug(
                "resolved %d recipients, skipped %d (category=%s)",
                len(recipients),
                len(skipped),
                category,
            )
        return ResolvedRecipients(recipients=recipients, skipped=skipped)
