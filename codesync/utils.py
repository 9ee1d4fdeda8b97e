"""
Utility functions for ID and code generation
"""
import random
import string
import uuid


def generate_connection_id(length: int = 12) -> str:
    """Generate a random connection ID"""
    alphabet = string.ascii_lowercase + string.digits
    return "conn_" + "".join(random.choice(alphabet) for _ in range(length))


def generate_message_id() -> str:
    """Generate a unique ID for a chat message or scheduled session"""
    return str(uuid.uuid4())


def generate_session_code(length: int = 8) -> str:
    """Generate a short upper-case session code (hex)"""
    return uuid.uuid4().hex[:length].upper()
