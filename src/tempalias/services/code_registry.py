"""Registry of confirmation codes extracted from delivery logs.

Entries are append-only and deduplicated on (code, sender, observed_at),
so repeated polls over the same logs never create duplicates. The registry
is persisted after every ingest that adds entries and is only rewritten
wholesale by an explicit clear.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, TypeAdapter

from tempalias.services.code_patterns import CodeMatcher
from tempalias.services.provider_client import MailLog
from tempalias.services.storage import (
    StateStore,
    StorageKey,
    load_json_slot,
    save_json_slot,
)

logger = logging.getLogger(__name__)

UNKNOWN_PARTY = "Unknown"


class ConfirmationCode(BaseModel):
    """A confirmation code observed in a forwarded message."""

    model_config = ConfigDict(frozen=True)

    code: str
    sender: str
    recipient: str
    observed_at: datetime
    subject_text: str
    source_log_id: str

    @property
    def dedup_key(self) -> tuple[str, str, datetime]:
        return (self.code, self.sender, self.observed_at)


_codes_adapter: TypeAdapter[list[ConfirmationCode]] = TypeAdapter(list[ConfirmationCode])


class CodeRegistry:
    """Deduplicated, persisted store of extracted confirmation codes.

    Example:
        registry = CodeRegistry(store)
        new = registry.ingest(logs)
        if len(new) == 1:
            print(f"New confirmation code: {new[0].code}")
    """

    def __init__(
        self,
        store: StateStore,
        matcher: CodeMatcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._matcher = matcher or CodeMatcher()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._entries: list[ConfirmationCode] = load_json_slot(
            store, StorageKey.CONFIRMATION_CODES, _codes_adapter, []
        )
        self._keys = {entry.dedup_key for entry in self._entries}

    @property
    def matcher(self) -> CodeMatcher:
        return self._matcher

    def __len__(self) -> int:
        return len(self._entries)

    def ingest(self, logs: Iterable[MailLog]) -> list[ConfirmationCode]:
        """Extract codes from logs and append the ones not seen before.

        Args:
            logs: Delivery logs, already filtered to this device.

        Returns:
            Only the entries added by this call, in log order.
        """
        added: list[ConfirmationCode] = []
        for log in logs:
            subject = log.subject or ""
            code = self._matcher.extract(subject)
            if code is None:
                continue

            now = self._clock()
            observed_at = log.created or now
            if observed_at.tzinfo is None:
                observed_at = observed_at.replace(tzinfo=UTC)
            entry = ConfirmationCode(
                code=code,
                sender=log.sender_email or UNKNOWN_PARTY,
                recipient=log.recipient_email or UNKNOWN_PARTY,
                observed_at=observed_at,
                subject_text=subject,
                source_log_id=log.id or str(int(now.timestamp() * 1000)),
            )
            if entry.dedup_key in self._keys:
                continue

            self._keys.add(entry.dedup_key)
            self._entries.append(entry)
            added.append(entry)

        if added:
            save_json_slot(
                self._store, StorageKey.CONFIRMATION_CODES, _codes_adapter, self._entries
            )
            logger.info(
                "Confirmation codes recorded: added=%d, total=%d",
                len(added),
                len(self._entries),
            )
        return added

    def list_codes(self) -> list[ConfirmationCode]:
        """Return all codes, most recently observed first."""
        return sorted(self._entries, key=lambda entry: entry.observed_at, reverse=True)

    def clear(self) -> int:
        """Remove every entry and the persisted slot.

        Returns:
            Number of entries removed.
        """
        count = len(self._entries)
        self._entries = []
        self._keys = set()
        self._store.remove(StorageKey.CONFIRMATION_CODES.value)
        logger.info("Confirmation code registry cleared: removed=%d", count)
        return count
