from pydantic import BaseModel
from typing import Optional

from apsflow.settings import RVT_FILE


class SessionRequest(BaseModel):
    """Body of routes whose only input is the caller's progress session."""
    sessionId: Optional[str] = None


class NicknameRequest(SessionRequest):
    nickname: Optional[str] = None


class JsonContentRequest(SessionRequest):
    jsonContent: str = ""


class WorkitemRequest(SessionRequest):
    rvtFileName: str = ""


class WorkitemJobRequest(SessionRequest):
    rvtFileName: str = RVT_FILE
    workitemId: Optional[str] = None


class TranslateRequest(SessionRequest):
    rootFilename: Optional[str] = None
