"""
Burst buffer requests.

A job asks for burst buffer resources either through `#BB`/`#DW` directives
at the top of its batch script or through interactive options such as
`capacity=100G swap=4`. Both are parsed into a BbRequest, which is stored on
the job as a canonical, versioned string:

    VERSION=1 SLURM_JOB=SIZE=107374182400,ACCESS=striped,TYPE=scratch
    SLURM_SWAP=4GB(2Nodes) SLURM_GRES=nodes:2
    SLURM_PERSISTENT_CREATE=NAME=scratch1,SIZE=10737418240
    SLURM_PERSISTENT_DESTROY=NAME=old,HURRY SLURM_PERSISTENT_USE

Every function here is pure: nothing reads controller state.
"""

from __future__ import annotations

import re
from typing import Dict, List, NamedTuple, Optional, Tuple

from burst_buffer.errors import InvalidRequestError
from burst_buffer.interpret import decode
from burst_buffer.interpret._common import any_none
from burst_buffer.interpret.size import (
    BYTE_CONVERSIONS,
    GIBI,
    SizeSpec,
    format_bytes,
    round_up_to_granularity,
)

REQUEST_VERSION = 1
GIB = BYTE_CONVERSIONS[GIBI]
NODES_GRES = "nodes"

VERSION_TOKEN = "VERSION"
JOB_TOKEN = "SLURM_JOB"
SWAP_TOKEN = "SLURM_SWAP"
GRES_TOKEN = "SLURM_GRES"
CREATE_TOKEN = "SLURM_PERSISTENT_CREATE"
DESTROY_TOKEN = "SLURM_PERSISTENT_DESTROY"
USE_TOKEN = "SLURM_PERSISTENT_USE"

BB_DIRECTIVE = "#BB"
DW_DIRECTIVE = "#DW"

_SWAP_REGEX_STRING = r"^([0-9]+)GB\(([0-9]+)Nodes\)$"
_SWAP_REGEX = re.compile(_SWAP_REGEX_STRING)
_SWAP_GB_REGEX = re.compile(r"^([0-9]+)(?:g|gb|gib)?$")


class GresRequest(NamedTuple):
    name: str
    count: int

    def __str__(self) -> str:
        return f"{self.name}:{self.count}"

    @classmethod
    def from_string(cls, _v: str) -> Optional[GresRequest]:
        """
        "nodes:4" -> GresRequest("nodes", 4)
        "nodes" -> GresRequest("nodes", 1)
        """
        name, count = decode.ranged(":", _v)
        if not name:
            return None
        if count == "":
            return cls(name, 1)
        value = decode.nonnegative_int(count)
        if value is None:
            return None
        return cls(name, value)


class PersistentCreate(NamedTuple):
    name: str
    size: int
    access: Optional[str] = None
    type: Optional[str] = None

    def __str__(self) -> str:
        items = [f"NAME={self.name}", f"SIZE={self.size}"]
        items.extend(_optional_items(self.access, self.type))
        return ",".join(items)


class PersistentDestroy(NamedTuple):
    name: str
    hurry: bool = False

    def __str__(self) -> str:
        out = f"NAME={self.name}"
        if self.hurry:
            out += ",HURRY"
        return out


class BbRequest:
    def __init__(
        self,
        size: int = 0,
        access: Optional[str] = None,
        type: Optional[str] = None,
        swap_gb: int = 0,
        swap_nodes: int = 0,
        gres: Optional[List[GresRequest]] = None,
        creates: Optional[List[PersistentCreate]] = None,
        destroys: Optional[List[PersistentDestroy]] = None,
        use_persistent: bool = False,
        version: int = REQUEST_VERSION,
    ) -> None:
        self.size: int = size
        self.access: Optional[str] = access
        self.type: Optional[str] = type
        self.swap_gb: int = swap_gb
        self.swap_nodes: int = swap_nodes
        self.gres: List[GresRequest] = list(gres or [])
        self.creates: List[PersistentCreate] = list(creates or [])
        self.destroys: List[PersistentDestroy] = list(destroys or [])
        self.use_persistent: bool = use_persistent
        self.version: int = version

    def __eq__(self, _other: object) -> bool:
        if not isinstance(_other, BbRequest):
            return NotImplemented
        return str(self) == str(_other)

    def __repr__(self) -> str:
        return f"BbRequest({str(self)!r})"

    def __str__(self) -> str:
        tokens = [f"{VERSION_TOKEN}={self.version}"]
        if self.size:
            items = [f"SIZE={self.size}"]
            items.extend(_optional_items(self.access, self.type))
            tokens.append(f"{JOB_TOKEN}={','.join(items)}")
        if self.swap_gb:
            tokens.append(f"{SWAP_TOKEN}={self.swap_gb}GB({self.swap_nodes}Nodes)")
        if self.gres:
            gres = ",".join([str(g) for g in self.gres])
            tokens.append(f"{GRES_TOKEN}={gres}")
        for create in self.creates:
            tokens.append(f"{CREATE_TOKEN}={create}")
        for destroy in self.destroys:
            tokens.append(f"{DESTROY_TOKEN}={destroy}")
        if self.use_persistent:
            tokens.append(USE_TOKEN)
        return " ".join(tokens)

    @property
    def swap_size(self) -> int:
        return self.swap_gb * GIB * max(self.swap_nodes, 1)

    @property
    def persist_add(self) -> int:
        return sum([create.size for create in self.creates])

    @property
    def empty(self) -> bool:
        return not (
            self.size
            or self.swap_gb
            or self.gres
            or self.creates
            or self.destroys
            or self.use_persistent
        )

    def check(self) -> None:
        """
        Raises InvalidRequestError for a persistent buffer with no capacity or
        with a name that could be taken for a job id, and for an empty gres
        request, whichever way the request was written.
        """
        for create in self.creates:
            _check_create(create)
        for gres in self.gres:
            if gres.count == 0:
                raise InvalidRequestError(f"invalid burst buffer gres {gres}")

    @classmethod
    def from_string(cls, _v: Optional[str]) -> Optional[BbRequest]:
        """
        Reads the canonical string. A string without a VERSION token is read
        as version 1; any other version is refused.
        """
        if _v is None:
            return None

        out = cls()
        for token in _v.split():
            if token == USE_TOKEN:
                out.use_persistent = True
                continue

            kv = decode.separated_key_value("=", token)
            if kv is None:
                return None
            key, value = kv

            if key == VERSION_TOKEN:
                if decode.nonnegative_int(value) != REQUEST_VERSION:
                    return None
            elif key == JOB_TOKEN:
                fields = _fields(value)
                size = decode.nonnegative_int(fields.get("SIZE", ""))
                if size is None:
                    return None
                out.size += size
                out.access = fields.get("ACCESS", out.access)
                out.type = fields.get("TYPE", out.type)
            elif key == SWAP_TOKEN:
                match = _SWAP_REGEX.match(value)
                if not match:
                    return None
                out.swap_gb = int(match.group(1))
                out.swap_nodes = int(match.group(2))
            elif key == GRES_TOKEN:
                items = decode.comma_separated_list(value)
                gres = [GresRequest.from_string(g) for g in items]
                if any_none(gres):
                    return None
                out.gres.extend(gres)  # type: ignore
            elif key == CREATE_TOKEN:
                fields = _fields(value)
                if "NAME" not in fields:
                    return None
                size = decode.nonnegative_int(fields.get("SIZE", ""))
                if size is None:
                    return None
                out.creates.append(
                    PersistentCreate(
                        fields["NAME"], size, fields.get("ACCESS"), fields.get("TYPE")
                    )
                )
            elif key == DESTROY_TOKEN:
                fields = _fields(value)
                if "NAME" not in fields:
                    return None
                hurry = "HURRY" in fields
                out.destroys.append(PersistentDestroy(fields["NAME"], hurry))
            else:
                return None
        return out


def parse_script(
    _script: str, _granularity: int = 1, _node_count: int = 1
) -> Optional[BbRequest]:
    """
    Scans the leading comment block of a batch script for `#BB` and `#DW`
    directives. Returns None when the script has none.

    #BB create_persistent name=NAME capacity=SIZE [access=A] [type=T]
    #BB destroy_persistent name=NAME [hurry]
    #DW jobdw capacity=SIZE [access_mode=A] [type=T]
    #DW swap GB
    #DW persistentdw name=NAME

    Raises InvalidRequestError for malformed directives.
    """
    out = BbRequest()
    found = False
    for line in _script.splitlines():
        line = line.strip()
        if not line or line.startswith("#!"):
            continue
        if not line.startswith("#"):
            break

        prefix = line[:3]
        words = line[3:].split()
        if prefix not in (BB_DIRECTIVE, DW_DIRECTIVE) or not words:
            continue
        verb, flags, options = _directive(words)

        if prefix == BB_DIRECTIVE and verb == "create_persistent":
            out.creates.append(_create(options, _granularity))
        elif prefix == BB_DIRECTIVE and verb == "destroy_persistent":
            name = options.get("name")
            if not name:
                raise InvalidRequestError("destroy_persistent requires name=")
            out.destroys.append(PersistentDestroy(name, "hurry" in flags))
        elif prefix == DW_DIRECTIVE and verb == "jobdw":
            _add_capacity(out, options.get("capacity"), _granularity)
            out.access = options.get("access_mode", out.access)
            out.type = options.get("type", out.type)
        elif prefix == DW_DIRECTIVE and verb == "swap":
            _add_swap(out, flags[0] if flags else None, _node_count)
        elif prefix == DW_DIRECTIVE and verb.startswith("swap="):
            _add_swap(out, verb[len("swap=") :], _node_count)
        elif prefix == DW_DIRECTIVE and verb == "persistentdw":
            out.use_persistent = True
        else:
            # stage_in, stage_out and the like are read by the tool itself
            continue
        found = True

    if not found:
        return None
    return out


def parse_interactive(
    _options: str, _granularity: int = 1, _node_count: int = 1
) -> Optional[BbRequest]:
    """
    "capacity=100G swap=4" -> BbRequest(size=100G + 4 GiB * nodes of swap)

    Options may be separated by spaces or commas. Returns None when no
    option is present.
    """
    options: Dict[str, str] = {}
    for word in _options.replace(",", " ").split():
        kv = decode.separated_key_value("=", word)
        if kv is None:
            raise InvalidRequestError(f"invalid burst buffer option {word!r}")
        options[kv[0].casefold()] = kv[1]

    if not options:
        return None

    unknown = set(options) - {"capacity", "swap", "access", "access_mode", "type"}
    if unknown:
        raise InvalidRequestError(f"invalid burst buffer options {sorted(unknown)}")

    out = BbRequest()
    if "capacity" in options:
        _add_capacity(out, options["capacity"], _granularity)
    if "swap" in options:
        _add_swap(out, options["swap"], _node_count)
    out.access = options.get("access_mode", options.get("access"))
    out.type = options.get("type")
    return out


def build_script(_request: BbRequest) -> str:
    """
    Synthesizes a batch script carrying an interactive request so the tool
    always has a script to read.
    """
    lines = ["#!/bin/bash"]
    if _request.swap_gb:
        lines.append(f"#DW swap={_request.swap_gb}GiB")
    job_size = _request.size - _request.swap_size
    if job_size > 0:
        line = f"#DW jobdw capacity={format_bytes(job_size)}"
        if _request.access:
            line += f" access_mode={_request.access}"
        if _request.type:
            line += f" type={_request.type}"
        lines.append(line)
    return "\n".join(lines) + "\n"


def _directive(_words: List[str]) -> Tuple[str, List[str], Dict[str, str]]:
    verb = _words[0]
    flags: List[str] = []
    options: Dict[str, str] = {}
    for word in _words[1:]:
        kv = decode.separated_key_value("=", word)
        if kv is None:
            flags.append(word.casefold())
        else:
            options[kv[0].casefold()] = kv[1]
    return verb, flags, options


def _create(_options: Dict[str, str], _granularity: int) -> PersistentCreate:
    name = _options.get("name")
    if not name:
        raise InvalidRequestError("create_persistent requires name=")
    size = _bytes(_options.get("capacity"), _granularity)
    if size is None:
        raise InvalidRequestError(
            f"invalid capacity for persistent burst buffer {name}"
        )
    out = PersistentCreate(name, size, _options.get("access"), _options.get("type"))
    _check_create(out)
    return out


def _check_create(_create: PersistentCreate) -> None:
    if not _create.name or _create.name[0].isdigit():
        raise InvalidRequestError(
            f"persistent burst buffer name {_create.name!r} may not start with a digit"
        )
    if _create.size == 0:
        raise InvalidRequestError(
            f"invalid capacity for persistent burst buffer {_create.name}"
        )


def _add_capacity(_out: BbRequest, _v: Optional[str], _granularity: int) -> None:
    spec = None if _v is None else SizeSpec.from_string(_v)
    if spec is None or spec.count == 0:
        raise InvalidRequestError(f"invalid burst buffer capacity {_v!r}")
    if spec.in_nodes:
        _out.gres.append(GresRequest(NODES_GRES, spec.count))
        return
    _out.size += round_up_to_granularity(spec.to_bytes() or 0, _granularity)


def _add_swap(_out: BbRequest, _v: Optional[str], _node_count: int) -> None:
    match = None if _v is None else _SWAP_GB_REGEX.match(_v.casefold())
    if not match:
        raise InvalidRequestError(f"invalid burst buffer swap {_v!r}")
    swap_gb = int(match.group(1))
    _out.swap_gb += swap_gb
    _out.swap_nodes = max(_node_count, 1)
    _out.size += swap_gb * GIB * _out.swap_nodes


def _bytes(_v: Optional[str], _granularity: int) -> Optional[int]:
    if _v is None:
        return None
    spec = SizeSpec.from_string(_v)
    if spec is None or spec.in_nodes:
        return None
    return round_up_to_granularity(spec.to_bytes() or 0, _granularity)


def _fields(_v: str) -> Dict[str, str]:
    """
    "NAME=x,SIZE=10,HURRY" -> {"NAME": "x", "SIZE": "10", "HURRY": ""}
    """
    out: Dict[str, str] = {}
    for item in decode.comma_separated_list(_v):
        kv = decode.separated_key_value("=", item)
        if kv is None:
            out[item] = ""
        else:
            out[kv[0]] = kv[1]
    return out


def _optional_items(_access: Optional[str], _type: Optional[str]) -> List[str]:
    out: List[str] = []
    if _access:
        out.append(f"ACCESS={_access}")
    if _type:
        out.append(f"TYPE={_type}")
    return out
