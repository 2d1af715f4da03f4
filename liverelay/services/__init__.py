# coding=utf-8

from .assistant import SYSTEM_PROMPT, AIRequestHandler, ChatCompletionClient
from .ocr import OCRRequestHandler, TextractDocumentClient, decode_image_payload, extract_line_text
from .transcription import AWSTranscribeRecognizer, RecognitionResult, TranscriptionSession

__all__ = [
    "AIRequestHandler",
    "AWSTranscribeRecognizer",
    "ChatCompletionClient",
    "OCRRequestHandler",
    "RecognitionResult",
    "SYSTEM_PROMPT",
    "TextractDocumentClient",
    "TranscriptionSession",
    "decode_image_payload",
    "extract_line_text",
]
