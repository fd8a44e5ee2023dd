"""HTTP clients for the brokerage API."""

from schwab_pipeline.clients.http import create_http_client
from schwab_pipeline.clients.pipeline_client import PipelineClient, create_pipeline_client


__all__ = [
    "PipelineClient",
    "create_http_client",
    "create_pipeline_client",
]
