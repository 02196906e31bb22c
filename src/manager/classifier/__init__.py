"""LLM-based route classification.

The classifier picks exactly one Route for the latest human message,
choosing only among the routes valid for the current session statuses.
"""

from src.manager.classifier.agent import (
    ClassificationFailedError,
    NoUserMessageError,
    RouteClassifier,
)
from src.manager.classifier.models import Route, RouteDecision
from src.manager.classifier.prompts import available_routes

__all__ = [
    "ClassificationFailedError",
    "NoUserMessageError",
    "Route",
    "RouteClassifier",
    "RouteDecision",
    "available_routes",
]
