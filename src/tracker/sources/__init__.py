"""External service clients: records, classification, prices."""

from tracker.sources.client import Classifier, PriceSource, RecordSource
from tracker.sources.openai_client import OpenAIClassifier
from tracker.sources.polygon_client import PolygonClient
from tracker.sources.reddit_client import RedditClient

__all__ = [
    "Classifier",
    "OpenAIClassifier",
    "PolygonClient",
    "PriceSource",
    "RecordSource",
    "RedditClient",
]
