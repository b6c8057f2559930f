"""Mail drivers and the factory that resolves them."""

from .factory import (
    connection_to_driver,
    create_driver,
    register_driver,
    validate_connection,
)
from .generic import GenericMailManager
from .ids import decode_message_id, encode_message_id

__all__ = [
    "GenericMailManager",
    "connection_to_driver",
    "create_driver",
    "decode_message_id",
    "encode_message_id",
    "register_driver",
    "validate_connection",
]
