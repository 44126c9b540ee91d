"""Localized prompt templates for grounded answers over reading notes."""
from __future__ import annotations

from langchain_core.prompts import ChatPromptTemplate

SUPPORTED_LOCALES = ("en", "pl")
DEFAULT_LOCALE = "en"

_JSON_CONTRACT = (
    'Reply with a single JSON object and nothing else: '
    '{{"text": "<answer>", "low_confidence": <true|false>}}'
)

_SYSTEM_PROMPTS = {
    "en": """You are a helpful reading assistant. Your role is to answer questions based ONLY on the user's reading notes provided in the context.

Guidelines:
- Base your answer exclusively on the notes context provided. Do not invent facts.
- If you cannot find relevant information in the notes, clearly state that you don't have enough information
- Set low_confidence to true if:
  * The notes don't contain sufficient information to answer confidently
  * The answer requires speculation or assumptions
  * The relevant information is ambiguous or contradictory
- Set low_confidence to false if:
  * You can answer directly from the notes with high certainty
  * The information is clear and unambiguous
- Be concise but thorough
- Use natural, conversational language
{citation_rule}
""" + _JSON_CONTRACT,
    "pl": """Jesteś pomocnym asystentem czytelniczym. Odpowiadasz WYŁĄCZNIE na podstawie notatek czytelniczych użytkownika podanych w kontekście.

Wytyczne:
- Odpowiadaj wyłącznie na podstawie podanego kontekstu notatek. Nie wymyślaj faktów.
- Jeśli nie ma wystarczających informacji, jasno powiedz, że ich brakuje
- Ustaw low_confidence na true, gdy:
  * Notatki nie zawierają wystarczających informacji do pewnej odpowiedzi
  * Odpowiedź wymaga spekulacji lub założeń
  * Informacje są niejednoznaczne lub sprzeczne
- Ustaw low_confidence na false, gdy:
  * Możesz odpowiedzieć bezpośrednio na podstawie notatek z wysoką pewnością
  * Informacje są jasne i jednoznaczne
- Bądź zwięzły, ale konkretny
- Używaj naturalnego, konwersacyjnego języka
- Odpowiadaj po polsku
{citation_rule}
""" + _JSON_CONTRACT,
}

_USER_PROMPTS = {
    "en": """Context from reading notes:
{context}

User's question: {question}

Please answer the question based on the notes context above. Remember to set low_confidence appropriately based on the quality and relevance of the available information.""",
    "pl": """Kontekst z notatek:
{context}

Pytanie użytkownika: {question}

Odpowiedz na podstawie powyższego kontekstu notatek. Pamiętaj, aby ustawić low_confidence zgodnie z jakością i trafnością dostępnych informacji.""",
}

_CITATION_RULES = {
    "en": "- Refer to the sources you used by their [Source n] label",
    "pl": "- Wskazuj wykorzystane źródła za pomocą etykiet [Source n]",
}


def normalize_locale(raw: str | None) -> str:
    """Maps an Accept-Language value (or a bare tag) onto a supported locale."""
    if not raw:
        return DEFAULT_LOCALE
    first = str(raw).split(",")[0].split(";")[0].strip().lower()
    primary = first.split("-")[0].split("_")[0]
    return primary if primary in SUPPORTED_LOCALES else DEFAULT_LOCALE


def build_answer_prompt(locale: str = DEFAULT_LOCALE) -> ChatPromptTemplate:
    lang = locale if locale in SUPPORTED_LOCALES else DEFAULT_LOCALE
    return ChatPromptTemplate.from_messages(
        [
            ("system", _SYSTEM_PROMPTS[lang]),
            ("human", _USER_PROMPTS[lang]),
        ]
    )


def citation_rule(locale: str, citations_required: bool) -> str:
    if not citations_required:
        return ""
    return _CITATION_RULES.get(locale, _CITATION_RULES[DEFAULT_LOCALE])
