"""
Reply message catalog

Resolves localized reply texts by message code and language.
"""

from typing import Dict, Optional

import structlog


class MessageCatalog:
    """Lookup of reply texts keyed by message code, then language code."""

    def __init__(self, messages: Dict[str, Dict[str, str]], default_language: str = "en") -> None:
        """
        Initialize the catalog.

        Args:
            messages: Message code -> language code -> text
            default_language: Language tried when the requested one has no text
        """
        self.messages = messages
        self.default_language = default_language
        self.logger = structlog.get_logger(__name__)

    def get_message(self, code: str, language: Optional[str]) -> Optional[str]:
        """
        Resolve a message, falling back to the default language.

        Args:
            code: Message code, e.g. 'invite_text'
            language: Language code of the recipient's activity

        Returns:
            Message text, or None if neither language resolves
        """
        translations = self.messages.get(code) or {}
        if language and language in translations:
            return translations[language]
        if self.default_language in translations:
            return translations[self.default_language]

        self.logger.warning("Message code could not be resolved", code=code, language=language)
        return None
