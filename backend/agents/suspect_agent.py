"""
Suspect Agent — automated answerer for every suspect the human is not playing.

Uses gemini-2.5-flash (text-only) to answer a detective's question in the
voice of one suspect, grounded in that suspect's dossier from the room's case.
Stateless: case data is resolved fresh (cached by CaseStore) on every call.

Never raises: when the SDK, the API key or the call itself is unavailable it
returns a stock in-character deflection, so the correlator always has an
answer to deliver.
"""
import logging
import random
from typing import Any, Dict, List, Optional

from config import Settings, settings as default_settings
from models.room import CaseFile
from services.firestore_service import CaseStore

logger = logging.getLogger(__name__)


# ── Stock deflections (used when generation is unavailable) ───────────────────

_STOCK_LINES: Dict[str, List[str]] = {
    "Mrs. Bellamy": [
        "I have kept this house for twenty years, Detective. I know my place and I kept to it.",
        "I was in the pantry with the silver. You may ask anyone.",
    ],
    "Mr. Holloway": [
        "I was reading, as I told you. Terrible business, all of it.",
        "Ask me anything you like. I've nothing to hide in my own house.",
    ],
    "Tommy the Janitor": [
        "I was down the cellar with that pipe, wasn't I? Didn't see nothing.",
        "I just fix things, sir. I don't go poking about upstairs.",
    ],
    "Dr. Adrian Blackwood": [
        "What makes you think I would know anything about that?",
        "I retired early. Is a headache now a crime, Detective?",
    ],
}

_GENERIC_LINES = [
    "I've already told you everything I know.",
    "I'd rather not say any more without a solicitor present.",
]


def stock_answer(character: str) -> str:
    return random.choice(_STOCK_LINES.get(character, _GENERIC_LINES))


_BASE_SYSTEM = """You are {name}, a suspect in a murder investigation being questioned by a detective.

CASE: {title}
{summary}

YOUR PROFILE:
  Who you are: {description}
  Your alibi:  {alibi}
  What you are hiding: {secret}
  How you speak: {voice}

ABSOLUTE RULES:
- Always stay in character as {name}. Never mention being an AI or a game.
- Never volunteer your secret. Deflect or lie about it if pressed, but stay consistent.
- Keep answers to 1-3 sentences, a natural spoken length.
- Refer to the other suspects by name when relevant: {others}."""


def _build_system(case: CaseFile, character: str) -> str:
    dossier = case.dossier(character)
    others = ", ".join(s.name for s in case.suspects if s.name != character) or "none"
    return _BASE_SYSTEM.format(
        name=character,
        title=case.title or "Untitled case",
        summary=case.summary,
        description=dossier.description if dossier else "",
        alibi=dossier.alibi if dossier else "You were elsewhere.",
        secret=dossier.secret if dossier else "Nothing of consequence.",
        voice=dossier.voice if dossier else "guarded",
        others=others,
    )


class SuspectAgent:
    """LLM-backed automated answerer. All methods are stateless."""

    def __init__(self, settings: Optional[Settings] = None, case_store: Optional[CaseStore] = None):
        self.settings = settings or default_settings
        self.case_store = case_store or CaseStore(self.settings)
        self._client: Optional[Any] = None
        self._unavailable = False

    def _get_client(self) -> Optional[Any]:
        if self._unavailable:
            return None
        if self._client is None:
            try:
                from google import genai
            except ImportError:
                self._unavailable = True
                logger.warning("google-genai not installed, suspect agent using stock answers")
                return None

            if not self.settings.gemini_api_key:
                self._unavailable = True
                logger.warning("GEMINI_API_KEY not set, suspect agent using stock answers")
                return None

            self._client = genai.Client(api_key=self.settings.gemini_api_key)
        return self._client

    async def get_automated_answer(self, character: str, question: str, case_ref: Optional[str]) -> str:
        client = self._get_client()
        if client is None:
            return stock_answer(character)

        case = await self.case_store.get_case(case_ref)
        system = _build_system(case, character)
        prompt = (
            f'The detective asks you: "{question}"\n\n'
            f"Answer as {character} in 1-3 sentences, staying in character."
        )

        try:
            from google.genai import types
            response = await client.aio.models.generate_content(
                model=self.settings.answer_model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    system_instruction=system,
                    temperature=0.8,
                    max_output_tokens=300,
                ),
            )
            text = response.text
        except Exception as exc:
            logger.error("[suspect] Gemini call failed for %s: %s", character, exc)
            return stock_answer(character)

        answer = text.strip() if text else ""
        if not answer:
            return stock_answer(character)
        logger.info("[suspect] %s answered: %.80s…", character, answer)
        return answer


# Module-level singleton
suspect_agent = SuspectAgent()
