"""
Pipeline module: Bounded in-flight windows and progress streams.
"""

from cloudcore.pipeline.window import InFlightWindow
from cloudcore.pipeline.progress import ProgressChannel, ProgressEvent

__all__ = [
    "InFlightWindow",
    "ProgressChannel",
    "ProgressEvent",
]
