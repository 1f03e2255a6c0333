import base64
import json
import logging

from anthropic import AsyncAnthropic
from pydantic import ValidationError

from ..config import get_settings
from ..models import RecognizedReceipt


logger = logging.getLogger(__name__)

SUPPORTED_MEDIA_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")


RECEIPT_RECOGNITION_PROMPT = """You are reading a photo of a restaurant or shop receipt. Extract it as JSON:

{
  "businessName": "Name of the store or restaurant",
  "items": [
    {
      "name": "Item name exactly as printed",
      "price": 12.99,
      "description": "Extra details, or a note when the price is unreadable"
    }
  ],
  "subtotal": 25.00,
  "tax": 2.10,
  "tip": 4.00,
  "total": 31.10,
  "date": "YYYY-MM-DD",
  "confidence": 0.9
}

Important:
- All amounts are plain numbers without currency symbols
- If an item's price cannot be read clearly, use null and explain in description
- If a field is not visible, use null
- Check that the item prices add up to the subtotal and that
  total = subtotal + tax + tip; lower the confidence when they do not
- confidence is between 0.0 and 1.0
- If the image is not a receipt, return an empty items list and confidence 0.0
- Return ONLY the JSON, no additional text"""


class RecognitionError(Exception):
    """Raised when a receipt image cannot be turned into structured data."""


def extract_json(response_text: str) -> dict:
    """Parse the JSON object in a model reply, tolerating text around it."""
    try:
        return json.loads(response_text)
    except json.JSONDecodeError:
        pass

    json_start = response_text.find("{")
    json_end = response_text.rfind("}") + 1
    if json_start == -1 or json_end <= json_start:
        raise RecognitionError("Recognition result is not JSON")

    try:
        return json.loads(response_text[json_start:json_end])
    except json.JSONDecodeError as exc:
        raise RecognitionError("Recognition result is not valid JSON") from exc


async def recognize_receipt(
    image_data: str | bytes,
    media_type: str = "image/jpeg"
) -> RecognizedReceipt:
    """
    Recognize a receipt image using Claude Vision.

    Args:
        image_data: Base64 encoded image string or raw bytes
        media_type: MIME type of the image (image/jpeg, image/png, etc.)

    Returns:
        RecognizedReceipt ready to be folded into a receipt

    Raises:
        RecognitionError: If the image type is unsupported, the reply cannot be
            parsed, or no item with a name was recognized
    """
    if media_type not in SUPPORTED_MEDIA_TYPES:
        raise RecognitionError(f"Unsupported image format: {media_type}")

    settings = get_settings()
    client = AsyncAnthropic(api_key=settings.anthropic_api_key)

    # Ensure image_data is base64 string
    if isinstance(image_data, bytes):
        image_base64 = base64.b64encode(image_data).decode("utf-8")
    else:
        image_base64 = image_data

    message = await client.messages.create(
        model=settings.claude_model,
        max_tokens=settings.claude_max_tokens,
        temperature=0.3,
        messages=[
            {
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": media_type,
                            "data": image_base64,
                        },
                    },
                    {
                        "type": "text",
                        "text": RECEIPT_RECOGNITION_PROMPT,
                    },
                ],
            }
        ],
    )

    if not message.content or not getattr(message.content[0], "text", ""):
        raise RecognitionError("Recognition result is empty")

    data = extract_json(message.content[0].text)

    if not isinstance(data.get("items"), list):
        raise RecognitionError("Recognition result has no items list")

    # Drop nameless lines rather than rejecting the whole receipt
    data["items"] = [
        item for item in data["items"]
        if isinstance(item, dict) and str(item.get("name") or "").strip()
    ]
    if not data["items"]:
        raise RecognitionError("No items with a name were recognized")

    try:
        result = RecognizedReceipt.model_validate(data)
    except ValidationError as exc:
        raise RecognitionError(f"Recognition result has an unexpected shape: {exc}") from exc

    logger.info(
        "Recognized receipt %r: %d items, confidence %.2f",
        result.business_name,
        len(result.items),
        result.confidence,
    )
    return result
