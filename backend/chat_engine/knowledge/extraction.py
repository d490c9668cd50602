import logging

from bs4 import BeautifulSoup

from ..errors import DocumentValidationError

logger = logging.getLogger(__name__)

PDF = "application/pdf"
DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
MSWORD = "application/msword"
PLAIN_TEXT = "text/plain"
MARKDOWN = "text/markdown"
HTML = "text/html"

ALLOWED_MIME_TYPES = (PDF, DOCX, MSWORD, PLAIN_TEXT, MARKDOWN, HTML)

# Binary formats are accepted and stored, but their text is not parsed yet
DEFERRED_MIME_TYPES = (PDF, DOCX, MSWORD)


def html_to_text(html_content: str) -> str:
    """Visible text of an HTML page, one block per line, blank lines removed."""
    soup = BeautifulSoup(html_content, "html.parser")

    # Remove script and style elements
    for script_or_style in soup(["script", "style"]):
        script_or_style.decompose()

    text = soup.get_text(separator="\n", strip=True)
    lines = (line.strip() for line in text.splitlines())
    return "\n".join(line for line in lines if line)


def extract_text(data: bytes, mime_type: str, file_name: str) -> str:
    """
    Text content of an uploaded file.

    Raises:
        DocumentValidationError: for a MIME type that cannot be extracted.
    """
    if mime_type in (PLAIN_TEXT, MARKDOWN):
        return data.decode("utf-8", errors="replace")

    if mime_type == HTML:
        text = html_to_text(data.decode("utf-8", errors="replace"))
        logger.info(f"Extracted ~{len(text)} chars of HTML text from {file_name}")
        return text

    if mime_type in DEFERRED_MIME_TYPES:
        return (
            f"[{mime_type} file: {file_name}]\n"
            "Content extraction for this file type will be implemented in a future update."
        )

    raise DocumentValidationError(f"Unsupported file type for text extraction: {mime_type}")
