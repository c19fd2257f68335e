"""Clients for the reference completion-time dataset."""

from .hltb_api_client import HLTBApiClient
from .hltb_scraper import HLTBScraper
from .http_client import AsyncHTTPClient, HttpResponse, HttpTransport, RequestsTransport

__all__ = [
    "AsyncHTTPClient",
    "HLTBApiClient",
    "HLTBScraper",
    "HttpResponse",
    "HttpTransport",
    "RequestsTransport",
]
