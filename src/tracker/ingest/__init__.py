"""Newsletter ingestion: mailbox polling, extraction and URL cleanup."""

from tracker.ingest.mailbox import MailboxPoller, MailboxResult, NewsletterMessage
from tracker.ingest.newsletters import Extraction, ExtractedItem, extract, extract_links
from tracker.ingest.urls import normalize_url, probe_url

__all__ = [
    "MailboxPoller",
    "MailboxResult",
    "NewsletterMessage",
    "Extraction",
    "ExtractedItem",
    "extract",
    "extract_links",
    "normalize_url",
    "probe_url",
]
