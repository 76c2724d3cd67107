from core.sanitizer import ContentSanitizer


def test_markup_is_escaped_not_stripped():
    cleaned = ContentSanitizer().clean('<script>alert("x")</script> & <b>bold</b>')
    assert "<script>" not in cleaned
    assert "&lt;script&gt;" in cleaned
    assert "&lt;b&gt;bold&lt;/b&gt;" in cleaned
    assert "&amp;" in cleaned


def test_plain_text_is_unchanged():
    assert ContentSanitizer().clean("see you at noon") == "see you at noon"


def test_empty_text():
    assert ContentSanitizer().clean("") == ""
    assert ContentSanitizer().clean(None) == ""


def test_to_html_keeps_line_breaks():
    html = ContentSanitizer().to_html("line one\r\nline two")
    assert html == "<p>line one<br>\nline two</p>"
