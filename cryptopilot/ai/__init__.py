"""Dip classifiers for buy decisions."""

from .dip_classifier import (
    BaseDipClassifier,
    ClassifierError,
    DipAnalysis,
    DrawdownDipClassifier,
    OpenAIDipClassifier,
    build_classifier,
)

__all__ = [
    "BaseDipClassifier",
    "ClassifierError",
    "DipAnalysis",
    "DrawdownDipClassifier",
    "OpenAIDipClassifier",
    "build_classifier",
]
