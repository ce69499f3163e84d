# certificate_service.py
# Ownership certificate issuance (external document store adapter)

import logging
import uuid
from typing import Protocol

from config import settings

log = logging.getLogger(__name__)


class CertificateStore(Protocol):
    async def issue_certificate(self, investment_id: int) -> str:
        ...


class UrlCertificateStore:
    """
    Issues certificate references under CERTIFICATE_BASE_URL.

    Rendering of the certificate itself happens in the document service that
    serves the URL; this adapter only mints the stable reference.
    """

    def __init__(self, base_url: str = None):
        self.base_url = (base_url or settings.CERTIFICATE_BASE_URL).rstrip("/")

    async def issue_certificate(self, investment_id: int) -> str:
        reference = f"{self.base_url}/{investment_id}/{uuid.uuid4().hex}"
        log.info(f"Certificate issued for investment {investment_id}: {reference}")
        return reference
