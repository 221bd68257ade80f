"""Payload and document parsing utilities.

Turns ingest payloads (CSV text, remote JSON documents) into record lists and
extracts plain text from guideline documents (PDF or plain text).
"""
from __future__ import annotations

import base64
import binascii
import csv
import io
import logging
from typing import Any

import httpx
import pandas as pd
import pdfplumber
from pypdf import PdfReader

from .config import settings

logger = logging.getLogger(__name__)


class ParseError(Exception):
    """Raised when an ingest payload or guideline document cannot be parsed."""
    pass


def parse_csv_payload(payload: str) -> list[dict[str, Any]]:
    """Parse CSV text with a header row into structured records.

    Every cell is kept as a trimmed string; blank lines are skipped and short
    rows are padded with empty strings. Rows with more cells than the header
    are dropped with a warning.

    Args:
        payload: Raw CSV text

    Returns:
        List of dictionaries (one per row)

    Raises:
        ParseError: If CSV parsing fails
    """
    if not payload or not payload.strip():
        raise ParseError("CSV payload is empty")

    try:
        df = pd.read_csv(
            io.StringIO(payload),
            dtype=str,
            na_filter=False,
            skip_blank_lines=True,
            skipinitialspace=True,
            engine="python",
            on_bad_lines="warn",
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, csv.Error, UnicodeDecodeError) as e:
        logger.error(f"CSV parsing failed: {e}")
        raise ParseError(f"Failed to parse CSV: {e}") from e

    df.columns = [str(c).strip() for c in df.columns]
    df = df.fillna("").apply(lambda col: col.str.strip())

    logger.info(f"Parsed CSV with {len(df)} rows and {len(df.columns)} columns")
    return df.to_dict("records")


async def fetch_json_payload(url: str, *, transport: httpx.AsyncBaseTransport | None = None) -> list[Any]:
    """Fetch a remote JSON document and return it as a record list.

    A document that is not a JSON array is wrapped into a one-element list.

    Raises:
        ParseError: If the URL cannot be fetched or does not return JSON
    """
    if not url or not url.strip():
        raise ParseError("API payload URL is empty")

    try:
        async with httpx.AsyncClient(
            timeout=settings.ingest.fetch_timeout_seconds,
            transport=transport,
            follow_redirects=True,
        ) as client:
            response = await client.get(url.strip())
            response.raise_for_status()
            data = response.json()
    except httpx.HTTPError as e:
        logger.error(f"Fetching {url} failed: {e}")
        raise ParseError(f"Failed to fetch API payload: {e}") from e
    except ValueError as e:
        logger.error(f"API payload at {url} is not valid JSON: {e}")
        raise ParseError(f"API payload is not valid JSON: {e}") from e

    records = data if isinstance(data, list) else [data]
    logger.info(f"Fetched {len(records)} records from {url}")
    return records


def extract_text_from_pdf(document: bytes) -> str:
    """Extract text from a PDF using native text extraction.

    Tries pdfplumber first (better layout handling) and falls back to pypdf.

    Raises:
        ParseError: If neither backend can read the document
    """
    try:
        with pdfplumber.open(io.BytesIO(document)) as pdf:
            text_parts = []
            for page in pdf.pages:
                page_text = page.extract_text()
                if page_text:
                    text_parts.append(page_text)
            return "\n\n".join(text_parts)

    except Exception as e:
        logger.warning(f"pdfplumber extraction failed: {e}, trying pypdf")

        try:
            reader = PdfReader(io.BytesIO(document))
            text_parts = []
            for page in reader.pages:
                page_text = page.extract_text()
                if page_text:
                    text_parts.append(page_text)
            return "\n\n".join(text_parts)

        except Exception as e2:
            logger.error(f"pypdf extraction also failed: {e2}")
            raise ParseError(f"Failed to extract text from PDF: {e2}") from e2


def extract_text(document: bytes | str | None) -> str:
    """Extract plain text from a guidelines document.

    Accepts raw PDF bytes, plain UTF-8 text (as bytes or str) and
    ``data:<mime>;base64,`` URLs wrapping either of those.

    Returns:
        Extracted text, stripped. May be empty for image-only PDFs.

    Raises:
        ParseError: If the document cannot be decoded
    """
    if document is None:
        raise ParseError("No document provided")

    if isinstance(document, str):
        document = document.encode("utf-8")

    if document.startswith(b"data:") and b";base64," in document:
        try:
            document = base64.b64decode(document.split(b";base64,", 1)[1], validate=False)
        except (binascii.Error, ValueError) as e:
            raise ParseError(f"Invalid base64 document: {e}") from e

    if document.lstrip().startswith(b"%PDF"):
        return extract_text_from_pdf(document).strip()

    try:
        return document.decode("utf-8").strip()
    except UnicodeDecodeError as e:
        raise ParseError("Document is neither a PDF nor UTF-8 text") from e
