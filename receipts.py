import json
import logging
import re
from decimal import Decimal
from typing import Any, BinaryIO, Optional

import google.generativeai as genai
from pydantic import ValidationError

from categories import category_names, match_category
from config import Settings, get_settings
from errors import ExtractionFailed, InvalidFormat
from models import TransactionType
from schemas import ReceiptFields


logger = logging.getLogger(__name__)

CODE_FENCE_RE = re.compile(r"```(?:json)?\n?")

MAX_IMAGE_BYTES = 10 * 1024 * 1024


def build_prompt() -> str:
    categories = ", ".join(category_names(TransactionType.expense))
    return f"""Analyze this receipt image and extract the following information in JSON format:
- Total amount (just the number)
- Date (in ISO format)
- Description or items purchased (brief summary)
- Merchant/store name
- Suggested category (one of: {categories})

Only respond with valid JSON in this exact format:
{{
  "amount": number,
  "date": "ISO date string",
  "description": "string",
  "merchantName": "string",
  "category": "string"
}}

If it's not a receipt, return an empty object."""


def strip_code_fences(text: str) -> str:
    return CODE_FENCE_RE.sub("", text).strip()


def read_image(stream: BinaryIO) -> bytes:
    # one byte past the cap is enough for scan() to reject an oversized upload
    return stream.read(MAX_IMAGE_BYTES + 1)


class ReceiptScanner:
    """Turns a receipt image into candidate transaction fields.

    The model's answer is untrusted: it is parsed as JSON and validated
    through ``ReceiptFields`` before anything is returned. No retries.
    """

    def __init__(self, model: Any = None, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self._model = model

    def _get_model(self) -> Any:
        if self._model is None:
            if not self.settings.gemini_api_key:
                raise ExtractionFailed("Receipt scanning is not configured")
            genai.configure(api_key=self.settings.gemini_api_key)
            self._model = genai.GenerativeModel(
                model_name=self.settings.gemini_model,
                generation_config={"temperature": 0.1},
            )
        return self._model

    def scan(self, image: bytes, mime_type: str) -> ReceiptFields:
        if not image:
            raise InvalidFormat("Empty receipt image")
        if len(image) > MAX_IMAGE_BYTES:
            raise InvalidFormat("Receipt image too large (max 10MB)")
        if not (mime_type or "").startswith("image/"):
            raise InvalidFormat("Unsupported receipt file type")

        model = self._get_model()
        try:
            response = model.generate_content(
                [{"mime_type": mime_type, "data": image}, build_prompt()]
            )
            text = response.text
        except Exception as exc:
            logger.exception("receipt_scan_failed: kind=extraction_failed")
            raise ExtractionFailed("Failed to process receipt") from exc

        return self.parse(text)

    def parse(self, text: str) -> ReceiptFields:
        cleaned = strip_code_fences(text or "")
        try:
            payload = json.loads(cleaned, parse_float=Decimal)
        except json.JSONDecodeError as exc:
            logger.error(f"receipt_parse_failed: kind=invalid_format error={exc}")
            raise InvalidFormat("Invalid receipt format") from exc
        if not isinstance(payload, dict) or not payload:
            logger.error("receipt_parse_failed: kind=invalid_format error=not a receipt")
            raise InvalidFormat("Invalid receipt format")

        try:
            fields = ReceiptFields.model_validate(payload)
        except ValidationError as exc:
            logger.error(
                f"receipt_parse_failed: kind=invalid_format errors={exc.error_count()}"
            )
            raise InvalidFormat("Invalid receipt format") from exc

        return fields.model_copy(update={"category": match_category(fields.category)})
