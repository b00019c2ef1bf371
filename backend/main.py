from __future__ import annotations

import logging

from emoji_relay.application import create_app
from emoji_relay.config import settings

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

app = create_app()
