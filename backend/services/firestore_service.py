import asyncio
import logging
import os
from typing import Any, Dict, Optional

from models.room import CaseFile, SuspectDossier
from config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


# ── Built-in case (used when no Firestore project is configured) ──────────────

DEFAULT_CASE = CaseFile(
    case_ref="default",
    title="Death at Holloway House",
    summary=(
        "Lord Ashcombe was found dead in the library of Holloway House shortly "
        "after midnight. The doors were locked from the inside and a glass of "
        "port lay shattered beside him."
    ),
    suspects=[
        SuspectDossier(
            name="Mrs. Bellamy",
            description="The housekeeper, twenty years in service.",
            alibi="Says she was polishing silver in the pantry until half past eleven.",
            secret="Ashcombe had threatened to dismiss her without a reference.",
            voice="clipped and proper, bristles at any hint of impropriety",
        ),
        SuspectDossier(
            name="Mr. Holloway",
            description="The owner of the house and the victim's business partner.",
            alibi="Claims he was reading in his study all evening.",
            secret="The partnership was about to be dissolved in Ashcombe's favour.",
            voice="genial, a little too eager to help",
        ),
        SuspectDossier(
            name="Tommy the Janitor",
            description="Young handyman who keeps the boilers running.",
            alibi="Was down in the cellar fixing a burst pipe.",
            secret="Had been pocketing small valuables from the guest rooms.",
            voice="nervous, rambling, drops his h's",
        ),
        SuspectDossier(
            name="Dr. Adrian Blackwood",
            description="The family physician, visiting for the weekend.",
            alibi="Says he retired early with a headache.",
            secret="Prescribed the sleeping draught found in the victim's glass.",
            voice="cold, precise, answers questions with questions",
        ),
    ],
)


class FirestoreService:
    """
    Read-only access to externally authored case files.
    Async-friendly: sync Firestore calls run in the default thread pool.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        if self.settings.firestore_emulator_host:
            os.environ["FIRESTORE_EMULATOR_HOST"] = self.settings.firestore_emulator_host
        # Lazy import so the service can be instantiated before GCP creds exist
        from google.cloud import firestore
        self.db = firestore.Client(project=self.settings.google_cloud_project or None)

    def _run(self, fn):
        """Run a sync Firestore call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(None, fn)

    def _case_doc(self, case_ref: str):
        return self.db.collection(self.settings.case_collection).document(case_ref)

    async def get_case(self, case_ref: str) -> Optional[CaseFile]:
        doc = await self._run(lambda: self._case_doc(case_ref).get())
        if doc.exists:
            data: Dict[str, Any] = doc.to_dict()
            data.setdefault("case_ref", case_ref)
            return CaseFile(**data)
        return None


class CaseStore:
    """
    Resolves a room's case reference to case data. Uses Firestore when a
    project or emulator is configured, the built-in case otherwise.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._cache: Dict[str, CaseFile] = {DEFAULT_CASE.case_ref: DEFAULT_CASE}

    def _firestore_configured(self) -> bool:
        return bool(self.settings.google_cloud_project or self.settings.firestore_emulator_host)

    async def get_case(self, case_ref: Optional[str]) -> CaseFile:
        ref = case_ref or self.settings.default_case_ref
        cached = self._cache.get(ref)
        if cached is not None:
            return cached
        if self._firestore_configured():
            try:
                case = await get_firestore_service().get_case(ref)
            except Exception:
                logger.warning("Could not load case '%s' from Firestore", ref, exc_info=True)
                case = None
            if case is not None:
                self._cache[ref] = case
                return case
        logger.info("Case '%s' unavailable, using built-in case", ref)
        return DEFAULT_CASE


_firestore_service: Optional["FirestoreService"] = None


def get_firestore_service() -> "FirestoreService":
    """Lazy singleton, initialised on first call, not at import time.
    This prevents credential errors from crashing the app before FastAPI boots.
    """
    global _firestore_service
    if _firestore_service is None:
        _firestore_service = FirestoreService()
    return _firestore_service
