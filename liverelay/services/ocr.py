# coding=utf-8
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,", re.IGNORECASE)


def decode_image_payload(image: Any) -> bytes:
    if not isinstance(image, str) or not image.strip():
        raise ValueError("Missing image")
    data = DATA_URL_PREFIX.sub("", image.strip(), count=1)
    data = re.sub(r"\s+", "", data)
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Invalid image encoding") from e
    if not raw:
        raise ValueError("Missing image")
    return raw


def extract_line_text(blocks: Optional[Iterable[Dict[str, Any]]]) -> str:
    lines: List[str] = []
    for block in blocks or []:
        if block.get("BlockType") != "LINE":
            continue
        lines.append(str(block.get("Text", "") or ""))
    return "\n".join(lines)


class TextractDocumentClient:
    """
    AWS Textract document analysis (forms + tables) for one in-memory image.
    """

    def __init__(
        self,
        region: str = "us-east-1",
        client: Any = None,
        aws_access_key_id: str = "",
        aws_secret_access_key: str = "",
    ) -> None:
        self.region = str(region or "us-east-1").strip()
        if client is None:
            import boto3

            kwargs: Dict[str, Any] = {"region_name": self.region}
            if aws_access_key_id and aws_secret_access_key:
                kwargs["aws_access_key_id"] = aws_access_key_id
                kwargs["aws_secret_access_key"] = aws_secret_access_key
            client = boto3.client("textract", **kwargs)
        self.client = client

    def analyze(self, image_bytes: bytes) -> List[Dict[str, Any]]:
        response = self.client.analyze_document(
            Document={"Bytes": image_bytes},
            FeatureTypes=["FORMS", "TABLES"],
        )
        return list(response.get("Blocks") or [])


class OCRRequestHandler:
    """
    Turns a POST /ocr JSON body into a (status, body) pair.
    """

    def __init__(self, analyzer: Any) -> None:
        self.analyzer = analyzer

    async def handle(self, payload: Any) -> Tuple[int, Dict[str, Any]]:
        image = payload.get("image") if isinstance(payload, dict) else None
        try:
            image_bytes = decode_image_payload(image)
        except ValueError as e:
            return 400, {"error": str(e)}

        try:
            blocks = await asyncio.to_thread(self.analyzer.analyze, image_bytes)
        except asyncio.CancelledError:
            logger.info("ocr request aborted by caller bytes=%d", len(image_bytes))
            raise
        except Exception as e:
            logger.error("textract failed bytes=%d err=%s", len(image_bytes), e)
            return 500, {"error": "Textract failed", "details": str(e)}

        text = extract_line_text(blocks)
        logger.info("ocr done bytes=%d blocks=%d chars=%d", len(image_bytes), len(blocks), len(text))
        return 200, {"text": text}
