"""
Identifier Deriver
==================
Derives OpenTelemetry trace and span identifiers from the business keys of a
workflow run, so that re-processing a run always yields the same identifiers.

Encoding (fixed; changing it re-identifies every historical trace):
    Every field is rendered as text (integers in decimal), UTF-8 encoded and
    written as ``<byte length>:<bytes>``. A record is the concatenation of an
    encoded domain tag followed by the encoded fields. Length prefixes make
    the encoding injective: ("ab", "c") and ("a", "bc") never collide.

Trace ID (128 bits):
    first 16 bytes, big-endian, of
    SHA-256(enc("runtrace.trace.v1") enc(repository) enc(workflow) enc(run_id) [enc(seed_hex)])

Span ID (64 bits):
    first 8 bytes, big-endian, of
    SHA-256(enc("runtrace.span.v1") enc(trace_id_hex) enc(layer) [enc(job_id) [enc(step_index)]])

    Span IDs hang off the trace ID. In normal mode that makes them a pure
    function of (repository, workflow, run, job, step); in developer mode
    they follow that invocation's random seed, so the tree stays internally
    consistent within one export.

Developer Mode:
    A fresh 16-byte seed is drawn once per deriver (one deriver per pipeline
    invocation) and mixed into every trace ID. The same run therefore gets a
    different trace ID on each invocation.

OpenTelemetry treats an all-zero ID as invalid; such a digest is mapped to 1.
"""
import hashlib
import secrets
from typing import Optional, Union

from runtrace.core.constants import LAYER_JOB, LAYER_RUN, LAYER_STEP
from runtrace.core.errors import InvalidIdentifierError

TRACE_TAG = "runtrace.trace.v1"
SPAN_TAG = "runtrace.span.v1"

TRACE_ID_BYTES = 16
SPAN_ID_BYTES = 8

Field = Union[str, int]


def encode_fields(*fields: Field) -> bytes:
    """
    Length-prefix encode a tuple of fields.

    Parameters
    ----------
    *fields : str | int
        Values to encode, in order. Integers are written in decimal.

    Returns
    -------
    bytes
        ``b"<len>:<utf8>"`` for each field, concatenated.
    """
    parts = []
    for value in fields:
        raw = str(value).encode("utf-8")
        parts.append(str(len(raw)).encode("ascii") + b":" + raw)
    return b"".join(parts)


def _digest(width: int, *fields: Field) -> int:
    digest = hashlib.sha256(encode_fields(*fields)).digest()
    value = int.from_bytes(digest[:width], "big")
    return value or 1


def _require_text(name: str, value: Field) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise InvalidIdentifierError(f"{name} must not be empty")
    return text


def _require_positive(name: str, value: int, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidIdentifierError(f"{name} must be an integer, got {value!r}")
    if value < minimum:
        raise InvalidIdentifierError(f"{name} must be >= {minimum}, got {value}")
    return value


class IdentifierDeriver:
    """
    Maps (repository, workflow, run[, job[, step]]) to trace/span identifiers.

    Usage:
        deriver = IdentifierDeriver()
        trace_id = deriver.trace_id("acme/widgets", "check.yaml", 42)
        root = deriver.root_span_id(trace_id)
        job = deriver.job_span_id(trace_id, 1001)
        step = deriver.step_span_id(trace_id, 1001, 1)
    """

    def __init__(self, devel: bool = False, seed: Optional[bytes] = None) -> None:
        self.devel = devel
        if devel:
            self.seed: Optional[bytes] = seed if seed is not None else secrets.token_bytes(16)
        else:
            self.seed = None

    def trace_id(self, repository: str, workflow: str, run_id: Union[int, str]) -> int:
        """
        Derive the 128-bit trace ID for a run.

        Raises
        ------
        InvalidIdentifierError
            If any identifying field is empty.
        """
        fields = [
            TRACE_TAG,
            _require_text("repository", repository),
            _require_text("workflow", workflow),
            _require_text("run_id", run_id),
        ]
        if self.seed is not None:
            fields.append(self.seed.hex())
        return _digest(TRACE_ID_BYTES, *fields)

    def root_span_id(self, trace_id: int) -> int:
        return _digest(SPAN_ID_BYTES, SPAN_TAG, self._trace_hex(trace_id), LAYER_RUN)

    def job_span_id(self, trace_id: int, job_id: int) -> int:
        job_id = _require_positive("job_id", job_id, 0)
        return _digest(SPAN_ID_BYTES, SPAN_TAG, self._trace_hex(trace_id), LAYER_JOB, job_id)

    def step_span_id(self, trace_id: int, job_id: int, step_index: int) -> int:
        job_id = _require_positive("job_id", job_id, 0)
        step_index = _require_positive("step_index", step_index, 1)
        return _digest(
            SPAN_ID_BYTES, SPAN_TAG, self._trace_hex(trace_id), LAYER_STEP, job_id, step_index
        )

    @staticmethod
    def _trace_hex(trace_id: int) -> str:
        if not trace_id:
            raise InvalidIdentifierError("trace_id must be non-zero")
        return format(trace_id, "032x")
