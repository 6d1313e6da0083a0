"""
ApsClient: one object wiring every component to a shared token provider
and HTTP session.
"""

from typing import Callable, List, Optional

import requests

from .auth import TokenProvider
from .derivative import DerivativeClient
from .design_automation import DesignAutomationClient
from .http import ApsHttp
from .oss import OssClient
from .progress import NULL_SINK, ProgressSink
from .provisioning import Provisioner
from .results import ResultRetriever
from .settings import ApsSettings
from .workitems import ArgumentSlot, PollListener, WorkitemJob, WorkitemOrchestrator


class ApsClient:
    """
    Facade over the APS workflow components.

    Usage:
        client = ApsClient.from_settings(ApsSettings.from_env())
        client.provisioner.ensure_bucket()
        client.oss.upload_object(bucket, "run.rvt", data)
        result = client.workitems.run()
    """

    def __init__(
        self,
        settings: ApsSettings,
        tokens: TokenProvider,
        http: ApsHttp,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.settings = settings
        self.tokens = tokens
        self.http = http
        self.oss = OssClient(http, settings.oss_base_url)
        self.da = DesignAutomationClient(http, settings.da_base_url)
        self.provisioner = Provisioner(self.oss, self.da, settings)
        self.results = ResultRetriever(http, self.oss, settings.oss_base_url)
        self.derivative = DerivativeClient(http, self.oss, settings.md_base_url)
        self.workitems = WorkitemOrchestrator(self.da, self.oss, settings, sleep=sleep)

    @classmethod
    def from_settings(
        cls,
        settings: ApsSettings,
        session: Optional[requests.Session] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> "ApsClient":
        session = session or requests.Session()
        tokens = TokenProvider(
            settings.client_id,
            settings.client_secret,
            scopes=settings.scopes,
            session=session,
            auth_url=settings.auth_url,
        )
        http = ApsHttp(tokens, session=session, timeout=settings.http_timeout)
        return cls(settings, tokens, http, sleep=sleep)

    def start_job(
        self,
        slots: Optional[List[ArgumentSlot]] = None,
        sink: ProgressSink = NULL_SINK,
        listener: Optional[PollListener] = None,
        job_id: Optional[str] = None,
    ) -> WorkitemJob:
        """Submit and poll a workitem in the background."""
        return WorkitemJob(self.workitems, slots=slots, sink=sink, job_id=job_id, listener=listener).start()

    def resume_job(
        self,
        workitem_id: str,
        sink: ProgressSink = NULL_SINK,
        listener: Optional[PollListener] = None,
        job_id: Optional[str] = None,
    ) -> WorkitemJob:
        """Watch an already-submitted workitem in the background."""
        return WorkitemJob(self.workitems, workitem_id=workitem_id, sink=sink, job_id=job_id, listener=listener).start()

    def close(self) -> None:
        self.http.session.close()

