"""Adapters for the edge platform CLI and deployed endpoints."""

from edge_deploy.platform.runner import CommandRunner, CommandResult, SubprocessRunner
from edge_deploy.platform.wrangler import (
    WranglerClient,
    DatabaseInfo,
    DeployOutcome,
    extract_deployment_url,
    parse_database_list,
    parse_created_database_id,
)
from edge_deploy.platform.health import HealthChecker, HealthCheckResult

__all__ = [
    'CommandRunner',
    'CommandResult',
    'SubprocessRunner',
    'WranglerClient',
    'DatabaseInfo',
    'DeployOutcome',
    'extract_deployment_url',
    'parse_database_list',
    'parse_created_database_id',
    'HealthChecker',
    'HealthCheckResult',
]
