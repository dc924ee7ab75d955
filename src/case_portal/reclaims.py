"""Asset-reclaim intake.

A second submission form, separate from cases: company claims get their
own ``AR-`` id, their own collection, and their own upload folder. There
is no client login or status workflow for them; staff read the records
directly.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable
from datetime import datetime

from case_portal.cases import sanitize_text
from case_portal.errors import ValidationError
from case_portal.otp import normalize_email
from case_portal.sessions import utcnow
from case_portal.store import ASSET_RECLAIMS, RecordStore
from case_portal.token_gen import generate_reclaim_id
from case_portal.uploads import RECLAIM_FOLDER, AttachmentStore, StagedFile

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("company", "contactName", "email", "details")
FORM_FIELDS = ("company", "contactName", "email", "phone", "propertyAddress", "details")

# field -> max length after sanitizing
_LIMITS = {
    "company": 200,
    "contactName": 100,
    "phone": 20,
    "propertyAddress": 300,
    "details": 5000,
}

_MAX_ID_ATTEMPTS = 5


def validate_claim(data: dict) -> dict:
    """Sanitize a claim form.

    Raises:
        ValidationError: a required field is blank, or the email is invalid.
    """
    fields = {name: sanitize_text(data.get(name), limit) for name, limit in _LIMITS.items()}
    fields["email"] = data.get("email") if isinstance(data.get("email"), str) else ""
    missing = [name for name in REQUIRED_FIELDS if not fields[name].strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    fields["email"] = normalize_email(fields["email"])
    return fields


class ReclaimIntake:
    """Stores asset-reclaim submissions and their files.

    Args:
        store: Record store holding the ``asset_reclaims`` collection.
        attachments: Upload staging and folders.
        clock: UTC time source.
    """

    def __init__(
        self,
        store: RecordStore,
        attachments: AttachmentStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.attachments = attachments
        self._clock = clock

    def submit(self, form: dict, staged: Iterable[StagedFile] = ()) -> dict:
        """Validate and store one claim; staged files move into its folder."""
        staged = list(staged)
        try:
            fields = validate_claim(form)
        except ValidationError:
            self.attachments.discard(staged)
            raise

        now = self._clock().isoformat()

        def _insert(records: dict) -> dict:
            for _ in range(_MAX_ID_ATTEMPTS):
                claim_id = generate_reclaim_id()
                if claim_id not in records:
                    break
            else:
                raise RuntimeError("Could not allocate a unique reclaim id")
            claim = {
                "id": claim_id,
                **fields,
                "files": [
                    {
                        "filename": f.filename,
                        "originalName": f.original_name,
                        "mimetype": f.mimetype,
                        "size": f.size,
                    }
                    for f in staged
                ],
                "status": "new",
                "updates": [],
                "createdAt": now,
            }
            records[claim_id] = claim
            return copy.deepcopy(claim)

        try:
            claim = self.store.mutate(ASSET_RECLAIMS, _insert)
        except Exception:
            self.attachments.discard(staged)
            raise

        if staged:
            self.attachments.move_to_case(staged, claim["id"], folder=RECLAIM_FOLDER)
        logger.info("Asset reclaim %s received (%d files)", claim["id"], len(staged))
        return claim

    def all(self) -> list[dict]:
        """Every claim, newest first."""
        claims = list(self.store.read_all(ASSET_RECLAIMS).values())
        claims.sort(key=lambda c: c.get("createdAt") or "", reverse=True)
        return claims
