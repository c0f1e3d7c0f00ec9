from .channel import ChannelExtractor, parse_video_node
from .interception import CapturedMedia, MediaPairer, ResponseBuffer, classify_media_url
from .records import ExtractedRecord, ExtractionResult, MediaPair
from .timeline import TimelineExtractor, parse_post_node

__all__ = [
    "CapturedMedia",
    "ChannelExtractor",
    "ExtractedRecord",
    "ExtractionResult",
    "MediaPair",
    "MediaPairer",
    "ResponseBuffer",
    "TimelineExtractor",
    "classify_media_url",
    "parse_post_node",
    "parse_video_node",
]
