# nodewright/models/settings.py

from pydantic import Field
from pydantic_settings import BaseSettings

from nodewright.deployment.nodeconfig import DEFAULT_TLS_SECRET_NAME
from nodewright.utils.polling import DEFAULT_PROFILE, QUICK_PROFILE, PollProfile


class NodeWrightSettings(BaseSettings):
    """
    Pydantic settings for the node lifecycle orchestrator.
    By default, these fields map to environment variables prefixed with `NODEWRIGHT_`.
    For example, `NODEWRIGHT_NAMESPACE`, `NODEWRIGHT_VERSION`, etc.
    """

    namespace: str = "openshift-windows-machine-config-operator"
    version: str  # No default => must be set (e.g., NODEWRIGHT_VERSION)
    platform_type: str = "None"
    tls_secret_name: str = DEFAULT_TLS_SECRET_NAME
    kubectl_path: str = "kubectl"
    default_poll_interval: float = Field(default=DEFAULT_PROFILE.interval, gt=0)
    default_poll_timeout: float = Field(default=DEFAULT_PROFILE.timeout, gt=0)
    quick_poll_interval: float = Field(default=QUICK_PROFILE.interval, gt=0)
    quick_poll_timeout: float = Field(default=QUICK_PROFILE.timeout, gt=0)

    class Config:
        env_prefix = "NODEWRIGHT_"

    def default_profile(self) -> PollProfile:
        return PollProfile(
            interval=self.default_poll_interval, timeout=self.default_poll_timeout
        )

    def quick_profile(self) -> PollProfile:
        return PollProfile(
            interval=self.quick_poll_interval, timeout=self.quick_poll_timeout
        )
