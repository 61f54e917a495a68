"""Priest directory over the profile document store.

Profiles live in ``{users_collection}/{uid}``.  The matching flow only
reads and filters on ``isPriestVerified``, ``isAvailableForConfession`` and
``languages``; the profile owner maintains them.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from confession.config import settings
from confession.errors import ValidationError
from confession.models.priest import PriestProfile
from confession.store.base import DocumentStore

log = logging.getLogger("confession.directory")

# Language filter value meaning "no filter"
ANY_LANGUAGE = "Any"


class PriestDirectory:
    def __init__(self, store: DocumentStore, collection: str | None = None) -> None:
        self._store = store
        self._collection = collection or settings.users_collection

    @staticmethod
    def _require_uid(uid: str) -> None:
        if not uid:
            raise ValidationError("User id is required")

    def _parse(self, uid: str, data: dict[str, Any]) -> PriestProfile | None:
        try:
            return PriestProfile.model_validate({**data, "uid": uid})
        except PydanticValidationError as e:
            log.warning("Skipping malformed profile %s: %s", uid, e)
            return None

    async def get_available_priests(self, language: str | None = None) -> list[PriestProfile]:
        """Verified priests currently accepting confessions.

        ``language`` of None, empty or ``"Any"`` applies no language filter.
        """
        array_contains = None
        if language and language != ANY_LANGUAGE:
            array_contains = ("languages", language)
        docs = await self._store.query(
            self._collection,
            equals={"isPriestVerified": True, "isAvailableForConfession": True},
            array_contains=array_contains,
        )
        priests = []
        for uid, data in docs:
            profile = self._parse(uid, data)
            # The query filters already; re-check in case the store is lax
            if profile and profile.is_priest_verified and profile.is_available_for_confession:
                priests.append(profile)
        log.info("Found %d available priest(s) (language=%s)", len(priests), language or ANY_LANGUAGE)
        return priests

    async def get_profile(self, uid: str) -> PriestProfile | None:
        self._require_uid(uid)
        data = await self._store.get(self._collection, uid)
        if data is None:
            return None
        return self._parse(uid, data)

    async def set_profile(self, profile: PriestProfile) -> None:
        self._require_uid(profile.uid)
        data = profile.model_dump(by_alias=True, exclude={"uid"})
        await self._store.set(self._collection, profile.uid, data, merge=True)

    async def is_verified(self, uid: str) -> bool:
        profile = await self.get_profile(uid)
        return bool(profile and profile.is_priest_verified)

    async def get_availability(self, uid: str) -> bool:
        profile = await self.get_profile(uid)
        return bool(profile and profile.is_available_for_confession)

    async def set_availability(self, uid: str, available: bool) -> None:
        """Raises ``TransportError`` when the profile does not exist."""
        self._require_uid(uid)
        await self._store.update(
            self._collection, uid, {"isAvailableForConfession": available}
        )
        log.info("Priest %s is %s", uid, "available" if available else "unavailable")
