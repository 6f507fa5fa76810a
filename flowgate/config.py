from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_CRED_IDS_PARAM,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_JOB_TIMEOUT,
    DEFAULT_N8N_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_WORKFLOW_PARAM,
    HISTORY_PAGE_SIZE,
    HISTORY_WINDOW_DAYS,
    N8N_MAX_PAGE_SIZE,
)


class JenkinsConfig(BaseModel):
    """Connection settings for the build server."""

    base_url: str = "http://localhost:8080"
    user: Optional[str] = None
    api_token: Optional[str] = None
    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    job_timeout: float = DEFAULT_JOB_TIMEOUT
    verify_tls: bool = True


class JobsConfig(BaseModel):
    """Job names and parameter names used by the named pipelines."""

    dev_to_git: Optional[str] = None
    deploy_from_git: Optional[str] = None
    promote_credentials: Optional[str] = None
    workflow_param: str = DEFAULT_WORKFLOW_PARAM
    cred_ids_param: str = DEFAULT_CRED_IDS_PARAM


class N8nConfig(BaseModel):
    """Settings for the development workflow engine API."""

    base_url: Optional[str] = None
    api_key: Optional[str] = None
    api_version: str = "v1"
    insecure_tls: bool = False
    page_size: int = N8N_MAX_PAGE_SIZE
    timeout_seconds: float = DEFAULT_N8N_TIMEOUT


class HistoryConfig(BaseModel):
    page_size: int = HISTORY_PAGE_SIZE
    window_days: int = HISTORY_WINDOW_DAYS


class FlowgateConfig(BaseModel):
    """Top-level configuration model."""

    jenkins: JenkinsConfig = JenkinsConfig()
    jobs: JobsConfig = JobsConfig()
    n8n: N8nConfig = N8nConfig()
    history: HistoryConfig = HistoryConfig()
    database_url: Optional[str] = None
    production_database_url: Optional[str] = None


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_seconds_from_ms(value: str) -> float:
    return float(value) / 1000.0


def _apply_env_overrides(config: FlowgateConfig) -> FlowgateConfig:
    env = os.environ

    jenkins = config.jenkins
    if env.get("JENKINS_BASE_URL"):
        jenkins.base_url = env["JENKINS_BASE_URL"].rstrip("/")
    if env.get("JENKINS_USER"):
        jenkins.user = env["JENKINS_USER"]
    if env.get("JENKINS_API_TOKEN"):
        jenkins.api_token = env["JENKINS_API_TOKEN"]
    if env.get("JENKINS_POLL_INTERVAL_MS"):
        jenkins.poll_interval = _env_seconds_from_ms(env["JENKINS_POLL_INTERVAL_MS"])
    if env.get("JENKINS_JOB_TIMEOUT_MS"):
        jenkins.job_timeout = _env_seconds_from_ms(env["JENKINS_JOB_TIMEOUT_MS"])

    jobs = config.jobs
    if env.get("JENKINS_JOB_DEV_TO_GIT"):
        jobs.dev_to_git = env["JENKINS_JOB_DEV_TO_GIT"]
    if env.get("JENKINS_JOB_DEPLOY_FROM_GIT"):
        jobs.deploy_from_git = env["JENKINS_JOB_DEPLOY_FROM_GIT"]
    if env.get("JENKINS_JOB_PROMOTE_CREDS"):
        jobs.promote_credentials = env["JENKINS_JOB_PROMOTE_CREDS"]
    if env.get("JENKINS_WORKFLOW_PARAM"):
        jobs.workflow_param = env["JENKINS_WORKFLOW_PARAM"]
    if env.get("JENKINS_CRED_IDS_PARAM"):
        jobs.cred_ids_param = env["JENKINS_CRED_IDS_PARAM"]

    n8n = config.n8n
    if env.get("N8N_DEV_BASE_URL"):
        n8n.base_url = env["N8N_DEV_BASE_URL"].rstrip("/")
    if env.get("N8N_DEV_API_KEY"):
        n8n.api_key = env["N8N_DEV_API_KEY"]
    if env.get("N8N_DEV_API_VERSION"):
        n8n.api_version = env["N8N_DEV_API_VERSION"]
    if env.get("N8N_DEV_INSECURE_TLS"):
        n8n.insecure_tls = _env_flag(env["N8N_DEV_INSECURE_TLS"])

    env_db_url = env.get("FLOWGATE_DATABASE_URL") or env.get("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    if env.get("FLOWGATE_PROD_DATABASE_URL"):
        config.production_database_url = env["FLOWGATE_PROD_DATABASE_URL"]
    return config


def load_config(path: Optional[str] = None) -> FlowgateConfig:
    """Load configuration from YAML file, then apply environment overrides.

    Args:
        path: Optional path to config file. Falls back to FLOWGATE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWGATE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowgateConfig(**data)
    else:
        config = FlowgateConfig()

    return _apply_env_overrides(config)
