"""
Translation capability — optional pre-pass over free text.

Keywords are matched against English, so a translator may normalise
customer text first and report the language it detected.  No translator
configured means pass-through with no detected language.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel


class Translation(BaseModel):
    translated: str
    detected_lang: Optional[str] = None


class Translator(ABC):
    @abstractmethod
    async def to_english(self, text: str) -> Translation: ...


class PassThroughTranslator(Translator):
    async def to_english(self, text: str) -> Translation:
        return Translation(translated=text)
