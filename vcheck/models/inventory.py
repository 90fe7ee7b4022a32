from enum import Enum
from typing import Optional

from sqlalchemy import Column, JSON
from sqlmodel import Field, SQLModel


class HostType(str, Enum):
    STANDARD = "Standard"
    VSAN_NODE = "VsanNode"
    MANAGEMENT_CLUSTER = "ManagementCluster"
    EDGE_CLUSTER = "EdgeCluster"


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    STALE = "stale"


class VCenter(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    url: str
    encrypted_credentials: str = ""  # Fernet token of {"username", "password"}
    enabled: bool = Field(default=True)

    @property
    def display_name(self) -> str:
        return self.name or self.url


class Host(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    ip_address: str = ""
    mo_id: str = ""  # vSphere managed-object id, e.g. host-42
    cluster_name: str = Field(default="", index=True)
    vcenter_id: Optional[int] = Field(default=None, foreign_key="vcenter.id", index=True)
    host_type: HostType = Field(default=HostType.STANDARD)
    enabled: bool = Field(default=True)

    @property
    def display_name(self) -> str:
        return self.name or self.ip_address


class HostProfile(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)  # matched against Host.host_type
    description: str = ""
    host_type: HostType = Field(default=HostType.STANDARD)
    check_ids: list[int] = Field(default_factory=list, sa_column=Column(JSON))
    enabled: bool = Field(default=True)
