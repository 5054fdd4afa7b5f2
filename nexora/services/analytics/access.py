"""
Who may see whose analytics.
"""
from typing import List, Optional, Set, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .data_access import AnalyticsDataSource, FacilityRecord, UserRecord


logger = structlog.get_logger(__name__)

MANAGER_ROLES = frozenset({"owner", "manager"})


class AccessResolver:
    def __init__(self, source: AnalyticsDataSource):
        self.source = source

    def _identity(self, identity_id: str) -> UserRecord:
        resolved = self.source.resolve_user(identity_id)
        return resolved or UserRecord(id=str(identity_id))

    def accessible_facilities(self, identity: UserRecord) -> List[Tuple[FacilityRecord, str]]:
        """Live facilities ``identity`` belongs to, with its role in each.

        Membership records come first; ownership and the facility member
        list fill in facilities that lack a record.
        """
        found: List[Tuple[FacilityRecord, str]] = []
        seen: Set[str] = set()
        for ident in identity.identifiers:
            for membership in self.source.memberships_for_user(ident):
                if membership.facility_id in seen:
                    continue
                facility = self.source.get_facility(membership.facility_id)
                if facility is None or not facility.is_active:
                    continue
                seen.add(facility.id)
                found.append((facility, membership.role))
        for ident in identity.identifiers:
            for facility in self.source.facilities_for_member(ident):
                if facility.id in seen or not facility.is_active:
                    continue
                seen.add(facility.id)
                found.append((facility, "owner" if facility.owner_id == ident else "member"))
        return found

    def facility_role(self, facility_id: str, identity: UserRecord) -> Optional[str]:
        for facility, role in self.accessible_facilities(identity):
            if facility.id == str(facility_id):
                return role
        return None

    def _facility_ids(self, user: UserRecord, include_dangling: bool = True) -> Set[str]:
        ids: Set[str] = set()
        for ident in user.identifiers:
            if include_dangling:
                ids.update(m.facility_id for m in self.source.memberships_for_user(ident))
            ids.update(f.id for f in self.source.facilities_for_member(ident))
        return ids

    def _is_self(self, member_id: str, identity: UserRecord) -> bool:
        if str(member_id) in identity.identifiers:
            return True
        member = self.source.resolve_user(member_id)
        return member is not None and member.id == identity.id

    def can_access_member_analytics(self, member_id: str, identity_id: str, role: Optional[str] = None) -> bool:
        """Checks run from most to least specific; later ones only matter when
        facility resolution fails, e.g. a membership pointing at a deleted facility."""
        try:
            identity = self._identity(identity_id)
            if self._is_self(member_id, identity):
                return True
            if self.accessible_facilities(identity):
                return True
            member = self.source.resolve_user(member_id) or UserRecord(id=str(member_id))
            if self._facility_ids(identity) & self._facility_ids(member):
                return True
            for ident in identity.identifiers:
                if any(m.role in MANAGER_ROLES for m in self.source.memberships_for_user(ident)):
                    return True
            return False
        except SQLAlchemyError as e:
            logger.warning("member_access_check_failed", member_id=member_id, identity_id=identity_id, error=str(e))
            return False

    def access_level(self, member_id: str, identity_id: str, role: Optional[str] = None) -> str:
        """self | manager | peer | none; decides how much of a member report is shown."""
        try:
            identity = self._identity(identity_id)
            if self._is_self(member_id, identity):
                return "self"
            member = self.source.resolve_user(member_id) or UserRecord(id=str(member_id))
            member_facilities = self._facility_ids(member, include_dangling=False)
            for facility, facility_role in self.accessible_facilities(identity):
                if facility.id in member_facilities and facility_role in MANAGER_ROLES:
                    return "manager"
        except SQLAlchemyError as e:
            logger.warning("member_access_level_failed", member_id=member_id, error=str(e))
            return "none"
        if self.can_access_member_analytics(member_id, identity_id, role):
            return "peer"
        return "none"
