"""
Claude Extraction Executor

Reads the submitted invoice image, asks Claude (vision) for the key
fields and applies the bookkeeping rules to the answer.
"""

import base64
import io
import json
import logging
import os
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional

import anthropic
from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError

from invoicechain.executors.base import ExecutionError, PermanentExecutionError, StepExecutor
from invoicechain.models.record import ExtractionOutput, InvoiceRecord, Step
from invoicechain.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-3-haiku-20240307"

# Longest edge sent to the API; larger images time out
MAX_IMAGE_EDGE = 2000

EXTRACTION_PROMPT = """Carefully analyze this invoice or receipt image and extract the following information.

IMPORTANT for date extraction:
- Look for the INVOICE DATE or BILL DATE (not expiry date, order date, or validity date)
- This is typically labeled as "Date:", "Invoice Date:", "Bill Date:", or similar
- It represents when the transaction occurred

Return ONLY a valid JSON object with these exact fields (use null for missing values):

{
  "particulars": "name of the company/restaurant/vendor",
  "date": "the invoice/bill date in YYYY-MM-DD format",
  "total_amount": numeric value only (the final amount to be paid),
  "currency": "3-letter currency code like USD, EUR, INR",
  "invoice_type": "classify as either 'restaurant' (for food/dining bills) or 'travel' (for transportation, hotels, flights) or 'other'"
}

Do not include any explanation, only the JSON object."""

CLASSIFICATION_RULES = {
    'restaurant': ('office', 'meeting with client'),
    'travel': ('travel', 'travel for meeting'),
}


def clean_json_response(content: str) -> str:
    """
    Remove markdown code blocks and extract the JSON object from a Claude response

    Args:
        content: Raw response content from Claude

    Returns:
        Cleaned JSON string ready for parsing
    """
    content = content.strip()

    if content.startswith('```json') or content.startswith('```JSON'):
        content = content[7:]
    elif content.startswith('```'):
        content = content[3:]

    if content.endswith('```'):
        content = content[:-3]

    # Drop any text before the opening or after the closing brace
    start = content.find('{')
    end = content.rfind('}')
    if start >= 0 and end >= start:
        content = content[start:end + 1]

    return content.strip()


def detect_media_type(content_type: Optional[str]) -> str:
    """Map a content type onto one of the media types the API accepts"""
    content_type = (content_type or '').lower()
    if 'png' in content_type:
        return 'image/png'
    if 'gif' in content_type:
        return 'image/gif'
    if 'webp' in content_type:
        return 'image/webp'
    return 'image/jpeg'


def format_display_date(value: date) -> str:
    """1-Apr-2025 style date used in the ledger"""
    return f"{value.day}-{value.strftime('%b-%Y')}"


class ClaudeExtractionExecutor(StepExecutor):
    """
    Extraction step backed by the Anthropic Messages API.

    Usage:
        executor = ClaudeExtractionExecutor(api_key=os.environ['ANTHROPIC_API_KEY'])
        output = executor.execute(record)
    """

    step = Step.EXTRACTION

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        max_tokens: int = 2048,
        mode_of_transaction: str = "paid by employee",
        client: Optional[Any] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY)
            model: Claude model with vision support
            max_tokens: Response token limit
            mode_of_transaction: Value written to every extracted invoice
            client: Pre-built Anthropic client, mainly for tests
            clock: Source of the ``parsed_at`` timestamp
        """
        self.api_key = api_key
        self._client = client
        self.model = model
        self.max_tokens = max_tokens
        self.mode_of_transaction = mode_of_transaction
        self.clock = clock

    @property
    def client(self) -> Any:
        """Anthropic client, created on first use"""
        if self._client is None:
            self._client = anthropic.Anthropic(api_key=self.api_key or os.getenv('ANTHROPIC_API_KEY'))
        return self._client

    @classmethod
    def from_config(cls, extraction_config: Dict[str, Any]) -> 'ClaudeExtractionExecutor':
        api_key_env = extraction_config.get('api_key_env', 'ANTHROPIC_API_KEY')
        return cls(
            api_key=extraction_config.get('api_key') or os.getenv(api_key_env),
            model=extraction_config.get('model', DEFAULT_MODEL),
            max_tokens=int(extraction_config.get('max_tokens', 2048)),
            mode_of_transaction=extraction_config.get('mode_of_transaction', "paid by employee")
        )

    def execute(self, record: InvoiceRecord) -> ExtractionOutput:
        logger.info(f"Parsing invoice image for record {record.id} with Claude...")

        if record.content_type and ('heic' in record.content_type.lower() or 'heif' in record.content_type.lower()):
            raise PermanentExecutionError(f"Unsupported image type: {record.content_type}")

        media_type = detect_media_type(record.content_type)
        image_data = self._prepare_image(self.read_source(record))

        raw = self._call_model(media_type, base64.standard_b64encode(image_data).decode('utf-8'))

        try:
            extracted = json.loads(clean_json_response(raw))
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse JSON response: {e}")
            logger.error(f"Response was: {raw}")
            raise PermanentExecutionError(f"LLM returned invalid JSON: {e}")

        if not isinstance(extracted, dict):
            raise PermanentExecutionError("LLM returned JSON that is not an object")

        try:
            output = self._apply_rules(extracted, record.manual_date)
        except ValidationError as e:
            raise PermanentExecutionError(f"Extracted fields are invalid: {e}")

        logger.info(
            f"Parsed invoice for record {record.id} "
            f"(classification: {output.classification}, type: {output.transaction_type})"
        )
        return output

    def _prepare_image(self, data: bytes) -> bytes:
        """Shrink images whose longest edge exceeds the API-friendly limit"""
        try:
            image = Image.open(io.BytesIO(data))
            if max(image.size) <= MAX_IMAGE_EDGE:
                return data
            image_format = image.format or 'JPEG'
            image.thumbnail((MAX_IMAGE_EDGE, MAX_IMAGE_EDGE))
            buffer = io.BytesIO()
            image.save(buffer, format=image_format)
            logger.info(f"Compressed image to {image.size[0]}x{image.size[1]}")
            return buffer.getvalue()
        except UnidentifiedImageError:
            raise PermanentExecutionError("Source document is not a readable image")

    def _call_model(self, media_type: str, base64_image: str) -> str:
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "image",
                                "source": {
                                    "type": "base64",
                                    "media_type": media_type,
                                    "data": base64_image
                                }
                            },
                            {
                                "type": "text",
                                "text": EXTRACTION_PROMPT
                            }
                        ]
                    }
                ]
            )
        except anthropic.BadRequestError as e:
            raise PermanentExecutionError(f"Claude rejected the request: {e}")
        except anthropic.APIError as e:
            logger.error(f"Claude completion error: {str(e)}")
            raise ExecutionError(f"Claude API error: {e}")

        if not response.content:
            raise ExecutionError("Claude returned an empty response")
        return response.content[0].text

    def _apply_rules(self, extracted: Dict[str, Any], manual_date: Optional[date]) -> ExtractionOutput:
        """Normalize the model answer into the ledger-ready extraction output"""
        iso_date = extracted.get('date')
        display_date = None

        if manual_date is not None:
            iso_date = manual_date.isoformat()
            display_date = format_display_date(manual_date)
            logger.info(f"Using manual date {display_date}")
        elif iso_date:
            try:
                parsed = date.fromisoformat(str(iso_date).strip())
                iso_date = parsed.isoformat()
                display_date = format_display_date(parsed)
                logger.info(f"Using extracted date {display_date}")
            except ValueError:
                # Keep the model's text if it is not an ISO date
                logger.warning(f"Could not parse date: {iso_date}")
                display_date = str(iso_date)

        currency = (extracted.get('currency') or '').strip().upper() or None
        total_amount = extracted.get('total_amount')
        if currency == 'USD':
            amount_inr, amount_usd = None, total_amount
        else:
            # INR and every other currency go to the INR column
            amount_inr, amount_usd = total_amount, None

        invoice_type = extracted.get('invoice_type')
        classification, description = CLASSIFICATION_RULES.get(invoice_type, ('other', None))

        return ExtractionOutput(
            particulars=extracted.get('particulars'),
            date=iso_date,
            amount=total_amount,
            currency=currency,
            display_date=display_date,
            invoice_type=invoice_type,
            classification=classification,
            description=description,
            transaction_type='debit',
            mode_of_transaction=self.mode_of_transaction,
            amount_inr=amount_inr,
            amount_usd=amount_usd,
            parsed_at=self.clock().isoformat()
        )
