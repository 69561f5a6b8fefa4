"""Message bus for engine events."""

from donorseg.bus.message_bus import MessageBus
from donorseg.bus.topics import SegmentationTopics, SystemTopics, Topic

__all__ = ["MessageBus", "SegmentationTopics", "SystemTopics", "Topic"]
