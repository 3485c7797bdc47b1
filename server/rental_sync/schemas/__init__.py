"""Pydantic schemas for request/response validation."""

from .booking import *  # noqa: F403
from .common import *  # noqa: F403
from .deposit_case import *  # noqa: F403
from .health import *  # noqa: F403
from .webhook import *  # noqa: F403
