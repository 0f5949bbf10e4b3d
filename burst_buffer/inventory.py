"""Inventory records reported by the storage orchestration tool.

The tool prints Python-style dictionaries. They are read as Python literals
and validated into the models below. Keys not named by a model are ignored.
"""

from __future__ import annotations

import ast
import json
import logging
from typing import Dict, List, NamedTuple, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

import burst_buffer.tool as tool
from burst_buffer.config import BbConfig

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Pool(_Record):
    """A named category of capacity, counted in units of granularity."""

    id: str
    units: str = "bytes"
    granularity: int = 1
    quantity: int = 0
    free: int = 0


class InstanceCapacity(_Record):
    bytes: int = 0
    nodes: int = 0


class InstanceLinks(_Record):
    session: Optional[int] = None


class Instance(_Record):
    id: int
    capacity: InstanceCapacity = Field(default_factory=InstanceCapacity)
    label: str = ""
    links: InstanceLinks = Field(default_factory=InstanceLinks)


class Session(_Record):
    id: int
    token: str
    owner: int
    created: int = 0


class ConfigurationLinks(_Record):
    instance: Optional[int] = None


class Configuration(_Record):
    id: int
    links: ConfigurationLinks = Field(default_factory=ConfigurationLinks)


class _PoolsResponse(_Record):
    pools: List[Pool] = []


class _InstancesResponse(_Record):
    instances: List[Instance] = []


class _SessionsResponse(_Record):
    sessions: List[Session] = []


class _ConfigurationsResponse(_Record):
    configurations: List[Configuration] = []


class SessionSnapshot(NamedTuple):
    sessions: List[Session]
    instances: List[Instance]

    def session_bytes(self) -> Dict[int, int]:
        out: Dict[int, int] = {}
        for instance in self.instances:
            session = instance.links.session
            if session is None:
                continue
            out[session] = out.get(session, 0) + instance.capacity.bytes
        return out


def load_response(_v: str) -> object:
    """
    The tool prints Python literals, "{u'id': u'dwcache', u'ok': True}".
    Plain JSON is read as well.
    """
    try:
        return json.loads(_v)
    except json.JSONDecodeError:
        return ast.literal_eval(_v.strip())


def parse_response(_model: Type[ModelT], _text: str) -> Optional[ModelT]:
    try:
        data = load_response(_text)
        return _model.model_validate(data)
    except (ValueError, SyntaxError, ValidationError) as e:
        logger.error("unable to parse %s response: %s", _model.__name__, e)
        return None


class Inventory:
    """
    Reads pools and sessions from the tool. Nothing here touches controller
    state, so these calls run without the controller lock.
    """

    def __init__(self, _tool: tool.Tool, _config: BbConfig) -> None:
        self._tool = _tool
        self._config = _config

    def reconfigure(self, _config: BbConfig) -> None:
        self._config = _config

    def get_pools(self) -> Optional[List[Pool]]:
        out = self._get(tool.POOLS, _PoolsResponse)
        return None if out is None else out.pools

    def get_instances(self) -> Optional[List[Instance]]:
        out = self._get(tool.SHOW_INSTANCES, _InstancesResponse)
        return None if out is None else out.instances

    def get_sessions(self) -> Optional[List[Session]]:
        out = self._get(tool.SHOW_SESSIONS, _SessionsResponse)
        return None if out is None else out.sessions

    def get_configurations(self) -> Optional[List[Configuration]]:
        out = self._get(tool.SHOW_CONFIGURATIONS, _ConfigurationsResponse)
        return None if out is None else out.configurations

    def get_session_snapshot(self) -> Optional[SessionSnapshot]:
        instances = self.get_instances()
        sessions = self.get_sessions()
        if instances is None or sessions is None:
            return None
        return SessionSnapshot(sessions, instances)

    def _get(self, _function: str, _model: Type[ModelT]) -> Optional[ModelT]:
        timeout = tool.timeout_for(self._config, _function)
        result = self._tool.run(_function, [], timeout)
        if not result.ok:
            logger.error(
                "%s status:%s response:%s", _function, result.status, result.output
            )
            return None
        return parse_response(_model, result.stdout)
