from .base import MemoryTransport, Transport, create_memory_transport_pair
from .sse import SseServerTransport, SseTransportRegistry
from .stdio import StdioTransport

__all__ = [
    "MemoryTransport",
    "SseServerTransport",
    "SseTransportRegistry",
    "StdioTransport",
    "Transport",
    "create_memory_transport_pair",
]
