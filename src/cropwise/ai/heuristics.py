"""Deterministic, script-aware follow-up questions.

Used whenever the suggestion upstream fails or its output cannot be parsed.
The language is picked from the script of the latest exchange, keyword
checks choose topic templates, and one generic closing question is always
appended so the result is never empty.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Sequence

from ..chat.message_model import ChatMessage, as_role_content

LOGGER = logging.getLogger(__name__)

MAX_HEURISTIC_QUERIES = 4

_DEVANAGARI = re.compile(r"[\u0900-\u0963\u0966-\u097F]")
_ODIA = re.compile(r"[\u0B00-\u0B7F]")


class Language(str, Enum):
    ENGLISH = "en"
    HINDI = "hi"
    ODIA = "or"


def detect_language(text: str) -> Language:
    """Pick the dominant Indic script; anything else reads as English.

    The danda marks (U+0964, U+0965) are shared by Odia and Hindi text, so
    they are not counted for either script. Ties go to Hindi.
    """

    devanagari = len(_DEVANAGARI.findall(text))
    odia = len(_ODIA.findall(text))
    if odia > devanagari:
        return Language.ODIA
    if devanagari:
        return Language.HINDI
    return Language.ENGLISH


@dataclass(frozen=True, slots=True)
class CropTerm:
    aliases: tuple[str, ...]
    english: str
    hindi: str
    odia: str

    def label(self, language: Language) -> str:
        match language:
            case Language.HINDI:
                return self.hindi
            case Language.ODIA:
                return self.odia
            case _:
                return self.english


CROPS: tuple[CropTerm, ...] = (
    CropTerm(("onion", "pyaaj", "pyaz", "प्याज", "ପିଆଜ"), "onion", "प्याज", "ପିଆଜ"),
    CropTerm(("tomato", "tamatar", "टमाटर", "ଟମାଟୋ"), "tomato", "टमाटर", "ଟମାଟୋ"),
    CropTerm(("paddy", "rice", "dhan", "धान", "चावल", "ଧାନ"), "paddy", "धान", "ଧାନ"),
    CropTerm(("wheat", "gehun", "गेहूं", "गेहूँ", "ଗହମ"), "wheat", "गेहूं", "ଗହମ"),
    CropTerm(("potato", "aloo", "आलू", "ଆଳୁ"), "potato", "आलू", "ଆଳୁ"),
)


@dataclass(frozen=True, slots=True)
class LanguagePack:
    """Keywords and fixed templates for one language."""

    weather_terms: tuple[str, ...]
    disease_terms: tuple[str, ...]
    drainage_terms: tuple[str, ...]
    weather: str
    disease: str
    drainage: str
    closing: str
    secondary: str
    generic_crop: str
    static: tuple[str, str, str]


_PACKS: Mapping[Language, LanguagePack] = {
    Language.ENGLISH: LanguagePack(
        weather_terms=("weather", "forecast", "rain"),
        disease_terms=("disease", "fungal", "fungus", "blight", "pest"),
        drainage_terms=("drain", "waterlog"),
        weather="Given the next 3 days forecast what should I prepare first?",
        disease="How do I prevent disease pressure in my {crop} right now?",
        drainage="What is the quickest low-cost way to improve drainage?",
        closing="If rain continues how do I reduce losses?",
        secondary="What should I ask next for better advice?",
        generic_crop="crop",
        static=(
            "What should I ask next for better advice?",
            "Which crop care step should I prioritise right now?",
            "How can I reduce weather risk on my farm?",
        ),
    ),
    Language.HINDI: LanguagePack(
        weather_terms=("मौसम", "बारिश", "weather"),
        disease_terms=("रोग", "कीट", "फफूंद", "disease"),
        drainage_terms=("जल निकासी", "जलभराव", "drain"),
        weather="अगले 3 दिनों के मौसम को देखते हुए अभी क्या तैयारी करूँ?",
        disease="{crop} में रोग से बचाव के लिए अगला कदम क्या है?",
        drainage="जल निकासी बेहतर करने का सबसे त्वरित समाधान क्या है?",
        closing="अगर बारिश जारी रही तो नुकसान कम कैसे करूँ?",
        secondary="फसल देखभाल के लिए अभी कौन सा कदम प्राथमिक है?",
        generic_crop="फसल",
        static=(
            "अगला सवाल क्या पूछूँ?",
            "फसल देखभाल के लिए अभी कौन सा कदम प्राथमिक है?",
            "मौसम जोखिम कम करने के उपाय क्या हैं?",
        ),
    ),
    Language.ODIA: LanguagePack(
        weather_terms=("ପାଗ", "ବର୍ଷା", "weather"),
        disease_terms=("ରୋଗ", "ପୋକ", "disease"),
        drainage_terms=("ନିସ୍ସରଣ", "drain"),
        weather="ଆସନ୍ତା ୩ ଦିନ ପାଗ ଦେଖି କଣ ପ୍ରସ୍ତୁତି କରିବି?",
        disease="{crop} ରୋଗ ରୋକଥାମ ପାଇଁ ବର୍ତ୍ତମାନ କଣ କରିବି?",
        drainage="ଜଳ ନିସ୍ସରଣ ଶୀଘ୍ର କେମିତି ସୁଧାରିବି?",
        closing="ଲମ୍ବା ବର୍ଷାର ପ୍ରଭାବ କେମିତି କମେଇବି?",
        secondary="ଫସଲ ଯତ୍ନ ପାଇଁ ପରବର୍ତ୍ତୀ ପଦକ୍ଷେପ କଣ?",
        generic_crop="ଫସଲ",
        static=(
            "ପରବର୍ତ୍ତୀ କେଉଁ ପ୍ରଶ୍ନ ପଚାରିବି?",
            "ଫସଲ ଯତ୍ନ ପାଇଁ ବର୍ତ୍ତମାନ କେଉଁ ପଦକ୍ଷେପ ଜରୁରୀ?",
            "ପାଗ ଜନିତ ବିପଦ କେମିତି କମେଇବି?",
        ),
    ),
}


def find_crop(text: str) -> CropTerm | None:
    lowered = text.lower()
    for crop in CROPS:
        if any(_contains_term(lowered, alias) for alias in crop.aliases):
            return crop
    return None


def _contains_term(lowered: str, term: str) -> bool:
    # latin aliases must start a word ("rice" must not hit "price")
    if term.isascii():
        return re.search(rf"\b{re.escape(term)}", lowered) is not None
    return term in lowered


def heuristic_queries_for_text(text: str, *, limit: int = MAX_HEURISTIC_QUERIES) -> list[str]:
    """Build template questions for *text*; never raises."""

    language = Language.ENGLISH
    try:
        language = detect_language(text)
        return _compose(text, language, max(1, limit))
    except Exception:
        LOGGER.warning("Heuristic suggestion builder failed; using static list", exc_info=True)
        return static_fallback(language)


def build_heuristic_queries(
    messages: Sequence[ChatMessage | Mapping[str, Any]],
    *,
    limit: int = MAX_HEURISTIC_QUERIES,
) -> list[str]:
    """Questions derived from the last assistant and last user message."""

    try:
        source = latest_exchange_text(messages)
    except Exception:
        LOGGER.warning("Unable to read conversation for heuristics", exc_info=True)
        return static_fallback(Language.ENGLISH)
    return heuristic_queries_for_text(source, limit=limit)


def latest_exchange_text(messages: Sequence[ChatMessage | Mapping[str, Any]]) -> str:
    last_user = ""
    last_assistant = ""
    for message in reversed(messages):
        role, content = as_role_content(message)
        if role == "assistant" and not last_assistant:
            last_assistant = content
        elif role == "user" and not last_user:
            last_user = content
        if last_user and last_assistant:
            break
    return f"{last_assistant}\n{last_user}"


def static_fallback(language: Language = Language.ENGLISH) -> list[str]:
    pack = _PACKS.get(language) or _PACKS[Language.ENGLISH]
    return list(pack.static)


def _compose(text: str, language: Language, limit: int) -> list[str]:
    pack = _PACKS[language]
    lowered = text.lower()
    queries: list[str] = []

    # one slot stays free for the closing question
    topic_limit = limit - 1

    def add(question: str, cap: int) -> None:
        if question not in queries and len(queries) < cap:
            queries.append(question)

    def mentions(terms: tuple[str, ...]) -> bool:
        return any(_contains_term(lowered, term) for term in terms)

    crop = find_crop(text)
    if mentions(pack.weather_terms):
        add(pack.weather, topic_limit)
    if crop is not None or mentions(pack.disease_terms):
        crop_label = crop.label(language) if crop is not None else pack.generic_crop
        add(pack.disease.format(crop=crop_label), topic_limit)
    if mentions(pack.drainage_terms):
        add(pack.drainage, topic_limit)
    add(pack.closing, limit)
    if len(queries) < 2:
        add(pack.secondary, limit)
    return queries


__all__ = [
    "Language",
    "CropTerm",
    "CROPS",
    "MAX_HEURISTIC_QUERIES",
    "detect_language",
    "find_crop",
    "build_heuristic_queries",
    "heuristic_queries_for_text",
    "latest_exchange_text",
    "static_fallback",
]
