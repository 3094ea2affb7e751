from rcep.adapters.network import NetworkEvent, extract_from_event, parse_body, should_capture_url
from rcep.adapters.embedded import extract_embedded_state
from rcep.adapters.page import parse_page, count_message_nodes

__all__ = [
    "NetworkEvent",
    "extract_from_event",
    "parse_body",
    "should_capture_url",
    "extract_embedded_state",
    "parse_page",
    "count_message_nodes",
]
