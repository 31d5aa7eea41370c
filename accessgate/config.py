"""Application configuration using pydantic-settings."""

import ipaddress
from typing import Optional, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    DATABASE_URL: str = "sqlite:///./accessgate.db"
    APP_NAME: str = "Coin WiFi Access Control Engine"
    LOG_LEVEL: str = "INFO"

    # Network layout
    LAN_INTERFACE: str = "wlan0"
    WAN_INTERFACE: str = "eth0"
    PORTAL_IP: str = "10.0.0.1"
    PORTAL_PORT: int = 80
    DHCP_RANGE: str = "10.0.0.10-10.0.0.250"

    # Enforcement tool
    IPTABLES_PATH: Optional[str] = None
    SKIP_AP_VERIFY: bool = False
    SIMULATE_FIREWALL: Optional[bool] = None
    FIREWALL_TIMEOUT_SECONDS: float = 5.0
    FIREWALL_RETRIES: int = 2
    RULE_DELETE_LIMIT: int = 32
    MANAGE_CAPTIVE_RULES: bool = True

    # Metering
    TIME_PER_PESO: int = 30
    RECONCILE_INTERVAL_SECONDS: float = 60.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @field_validator("DHCP_RANGE")
    @classmethod
    def _check_dhcp_range(cls, value: str) -> str:
        parts = [p.strip() for p in value.split("-")]
        if len(parts) != 2:
            raise ValueError(f"Invalid DHCP_RANGE '{value}': expected START-END")
        for part in parts:
            ipaddress.IPv4Address(part)
        return "-".join(parts)

    @field_validator("PORTAL_IP")
    @classmethod
    def _check_portal_ip(cls, value: str) -> str:
        return str(ipaddress.IPv4Address(value.strip()))

    @property
    def dhcp_bounds(self) -> Tuple[str, str]:
        start, end = self.DHCP_RANGE.split("-")
        return start, end


settings = Settings()
