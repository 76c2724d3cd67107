# core/sanitizer.py
"""
Markup escaping for stored and delivered message content.

Runs after spam scoring, on the original text, so escaping cannot hide a
phrase or a link from the heuristic.
"""

import bleach


class ContentSanitizer:

    def clean(self, text: str) -> str:
        """Escape every markup-significant character; no tags survive"""
        if not text:
            return ''
        return bleach.clean(text, tags=set(), attributes={}, protocols=set(), strip=False)

    def to_html(self, cleaned: str) -> str:
        """HTML part for mail delivery from already-cleaned text"""
        return '<p>' + cleaned.replace('\r\n', '\n').replace('\n', '<br>\n') + '</p>'
