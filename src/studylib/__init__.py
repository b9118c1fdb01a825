"""studylib - messaging and presence backend for the Student Library.

Usage:
    # Run the API server
    $ studylib serve --port 8000

    # Or embed the service layer directly
    from studylib import db, messages
    from studylib.conversation import ConversationKey

    db.init_db()
    message = messages.send(alice_id, body="hello", to=bob_id)
    messages.mark_read(ConversationKey.of(alice_id, bob_id), bob_id)
"""

from studylib._version import __version__
from studylib.config import ServerConfig, StudylibConfigError
from studylib.conversation import ConversationKey
from studylib.errors import StudylibError
from studylib.presence import PresenceRegistry

__all__ = [
    "__version__",
    "ConversationKey",
    "PresenceRegistry",
    "ServerConfig",
    "StudylibConfigError",
    "StudylibError",
]
