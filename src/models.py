from enum import Enum
from typing import Optional

from pydantic import BaseModel, field_validator


class SourceType(str, Enum):
    XTREAM = "xtream"
    M3U = "m3u"
    EPG = "epg"


class Source(BaseModel):
    """A configured upstream provider, as stored by the source manager."""
    id: str
    type: SourceType
    name: Optional[str] = None
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    enabled: bool = True

    @field_validator('id', mode='before')
    @classmethod
    def coerce_id(cls, v):
        # The source manager stores numeric ids; routes receive strings
        return str(v)

    @field_validator('url')
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.strip().rstrip('/') if v else v


class TranscodeMode(str, Enum):
    REMUX = "remux"
    TRANSCODE = "transcode"
