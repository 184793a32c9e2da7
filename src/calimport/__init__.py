"""Calendar aggregation and template formatting for outline documents."""

from calimport.aggregator import Aggregator
from calimport.models import Event, OutputNode, SourceSpec, TemplateNode
from calimport.pipeline import ImportPipeline
from calimport.sources import CalendarSource
from calimport.templates import TemplateEngine
from calimport.tokens import TokenCache

__all__ = [
    "Aggregator",
    "CalendarSource",
    "Event",
    "ImportPipeline",
    "OutputNode",
    "SourceSpec",
    "TemplateEngine",
    "TemplateNode",
    "TokenCache",
]
