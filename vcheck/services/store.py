import logging
from typing import Iterable, Optional

from sqlmodel import Session, select

from vcheck.core.exceptions import TargetResolutionError
from vcheck.models import CheckDefinition, CheckResult, Host, HostProfile, HostType, VCenter

logger = logging.getLogger(__name__)


class CheckStore:
    """Read/write access to check definitions, inventory and results.

    Every call opens its own short-lived session so concurrent checks never
    share ORM state.
    """

    def __init__(self, engine):
        self.engine = engine

    def save_result(self, result: CheckResult) -> CheckResult:
        with Session(self.engine, expire_on_commit=False) as session:
            session.add(result)
            session.commit()
            session.refresh(result)
            return result

    def get_vcenter(self, vcenter_id: int) -> VCenter:
        with Session(self.engine) as session:
            vcenter = session.get(VCenter, vcenter_id)
        if vcenter is None:
            raise TargetResolutionError(f"vCenter {vcenter_id} not found")
        return vcenter

    def get_hosts(self, host_ids: Iterable[int]) -> list[Host]:
        ids = list(host_ids)
        if not ids:
            return []
        with Session(self.engine) as session:
            return list(session.exec(select(Host).where(Host.id.in_(ids))).all())

    def find_hosts_by_cluster_and_vcenter(self, vcenter_id: int, cluster_name: str) -> list[Host]:
        """All enabled hosts of a cluster. Raises if the vCenter itself is unknown."""
        self.get_vcenter(vcenter_id)
        with Session(self.engine) as session:
            statement = (
                select(Host)
                .where(Host.vcenter_id == vcenter_id)
                .where(Host.cluster_name == cluster_name)
                .where(Host.enabled == True)  # noqa: E712
            )
            return list(session.exec(statement).all())

    def find_enabled_check_definitions(self, check_ids: Iterable[int]) -> list[CheckDefinition]:
        ids = list(check_ids)
        if not ids:
            return []
        with Session(self.engine) as session:
            statement = (
                select(CheckDefinition)
                .where(CheckDefinition.id.in_(ids))
                .where(CheckDefinition.enabled == True)  # noqa: E712
            )
            return list(session.exec(statement).all())

    def find_host_profile_by_type(self, host_type: HostType) -> Optional[HostProfile]:
        name = host_type.value if isinstance(host_type, HostType) else str(host_type)
        with Session(self.engine) as session:
            statement = (
                select(HostProfile)
                .where(HostProfile.name == name)
                .where(HostProfile.enabled == True)  # noqa: E712
            )
            return session.exec(statement).first()
