"""Test package for chatsync unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
