"""Resolves a scope request into the external systems to sync, split by source."""

from collections import deque
from typing import Callable, Dict, List, Optional, Set

import logging

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from schoolsync.connectors.base import SystemConfig
from schoolsync.constants.sync_status import SchoolSource
from schoolsync.exceptions import ScopeError
from schoolsync.models.node import Node, NodeSchool
from schoolsync.models.school_config import SchoolConfig
from schoolsync.utils.encrypt import decrypt_credentials

log = logging.getLogger(__name__)


class ScopeRequest(BaseModel):
    """Exactly one selection mode: explicit config ids, ``all``, or node ids."""

    config_ids_mb: List[int] = Field(default_factory=list)
    config_ids_nex: List[int] = Field(default_factory=list)
    all: bool = False
    node_ids: List[str] = Field(default_factory=list)
    include_descendants: bool = False

    def check_mode(self) -> "ScopeRequest":
        """Raises ScopeError unless exactly one selection mode is set."""
        modes = [bool(self.config_ids_mb or self.config_ids_nex), self.all, bool(self.node_ids)]
        if sum(modes) != 1:
            raise ScopeError(
                "Scope must select exactly one of: config ids, all, node ids "
                f"(got {sum(modes)})"
            )
        return self

    @property
    def is_explicit(self) -> bool:
        return bool(self.config_ids_mb or self.config_ids_nex)


class ResolvedScope(BaseModel):
    mb: List[SystemConfig] = Field(default_factory=list)
    nex: List[SystemConfig] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.mb) + len(self.nex)

    def all_systems(self) -> List[SystemConfig]:
        return [*self.mb, *self.nex]


def describe_scope(request: ScopeRequest) -> str:
    """Human-readable scope label stored on the run row."""
    if request.is_explicit:
        parts = []
        if request.config_ids_mb:
            parts.append("mb=" + ",".join(str(i) for i in request.config_ids_mb))
        if request.config_ids_nex:
            parts.append("nex=" + ",".join(str(i) for i in request.config_ids_nex))
        return "configs:" + ";".join(parts)
    if request.all:
        return "all"
    return ",".join(request.node_ids)


class ScopeResolver:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def resolve(self, request: ScopeRequest) -> ResolvedScope:
        request.check_mode()
        with self.session_factory() as db:
            if request.is_explicit:
                mb = self._configs_by_ids(db, SchoolSource.MANAGEBAC.value, request.config_ids_mb)
                nex = self._configs_by_ids(db, SchoolSource.NEXQUARE.value, request.config_ids_nex)
            elif request.all:
                mb = self._active_configs(db, SchoolSource.MANAGEBAC.value)
                nex = self._active_configs(db, SchoolSource.NEXQUARE.value)
            else:
                node_ids = (self.expand_descendants(db, request.node_ids)
                            if request.include_descendants else set(request.node_ids))
                mb = self._configs_for_nodes(db, SchoolSource.MANAGEBAC.value, node_ids)
                nex = self._configs_for_nodes(db, SchoolSource.NEXQUARE.value, node_ids)

            scope = ResolvedScope(mb=[self._to_system(c) for c in mb], nex=[self._to_system(c) for c in nex])
        log.info(f"Resolved scope '{describe_scope(request)}': {len(scope.mb)} ManageBac, {len(scope.nex)} Nexquare systems")
        return scope

    def expand_descendants(self, db: Session, node_ids: List[str]) -> Set[str]:
        """Breadth-first closure over parent_node_id; each node visited once."""
        visited: Set[str] = set()
        discovered_from: Dict[str, str] = {}
        queue = deque(node_ids)
        while queue:
            node_id = queue.popleft()
            if node_id in visited:
                continue
            visited.add(node_id)
            children = db.query(Node.node_id).filter(Node.parent_node_id == node_id).all()
            for (child_id,) in children:
                if child_id in visited or child_id in discovered_from:
                    if self._is_ancestor(child_id, node_id, discovered_from):
                        log.warning(f"Node hierarchy cycle detected at '{child_id}' (child of '{node_id}'), ignoring edge")
                    continue
                discovered_from[child_id] = node_id
                queue.append(child_id)
        log.debug(f"Expanded nodes {node_ids} to {len(visited)} nodes")
        return visited

    @staticmethod
    def _is_ancestor(candidate: str, node_id: str, discovered_from: Dict[str, str]) -> bool:
        current: Optional[str] = node_id
        seen: Set[str] = set()
        while current is not None and current not in seen:
            if current == candidate:
                return True
            seen.add(current)
            current = discovered_from.get(current)
        return False

    def _base_query(self, db: Session, source: str):
        return (
            db.query(SchoolConfig)
            .filter(SchoolConfig.source == source, SchoolConfig.is_active.is_(True))
            .filter(SchoolConfig.school_id.isnot(None), SchoolConfig.school_id != "")
            .order_by(SchoolConfig.country, SchoolConfig.school_name, SchoolConfig.id)
        )

    def _configs_by_ids(self, db: Session, source: str, ids: List[int]) -> List[SchoolConfig]:
        if not ids:
            return []
        return self._filter_blank(self._base_query(db, source).filter(SchoolConfig.id.in_(ids)).all())

    def _active_configs(self, db: Session, source: str) -> List[SchoolConfig]:
        return self._filter_blank(self._base_query(db, source).all())

    def _configs_for_nodes(self, db: Session, source: str, node_ids: Set[str]) -> List[SchoolConfig]:
        if not node_ids:
            return []
        school_ids = {
            school_id
            for (school_id,) in db.query(NodeSchool.school_id).filter(
                NodeSchool.node_id.in_(list(node_ids)), NodeSchool.school_source == source
            )
        }
        if not school_ids:
            return []
        return self._filter_blank(self._base_query(db, source).filter(SchoolConfig.school_id.in_(list(school_ids))).all())

    @staticmethod
    def _filter_blank(configs: List[SchoolConfig]) -> List[SchoolConfig]:
        # whitespace-only ids pass the SQL filter
        return [c for c in configs if c.school_id and c.school_id.strip()]

    @staticmethod
    def _to_system(config: SchoolConfig) -> SystemConfig:
        return SystemConfig(
            config_id=config.id,
            source=config.source,
            school_id=config.school_id.strip(),
            school_name=config.school_name,
            base_url=config.base_url,
            credentials=decrypt_credentials(config.credentials),
            settings=config.settings or {},
        )


def parse_config_ids(value: Optional[str]) -> List[int]:
    """'1, 2,3' -> [1, 2, 3]; used by the CLI."""
    if not value:
        return []
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError as e:
        raise ScopeError(f"Invalid config id list '{value}'") from e
