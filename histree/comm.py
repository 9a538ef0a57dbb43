"""Minimal SPMD communication substrate used by the tree builder.

Workers only ever need one collective: an element-wise global sum. The
thread communicator implements it as an allgather over in-memory message
boxes followed by a rank-ordered sum, so every worker observes bit-identical
results.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Sequence

import numpy as np

logger = logging.getLogger(__name__)


class CommunicatorAborted(RuntimeError):
    """Raised on a rank whose group was aborted by a failing peer."""


class Communicator(ABC):
    """Interface the tree builder expects from the execution substrate."""

    @property
    @abstractmethod
    def rank(self) -> int:
        """Rank of this worker."""

    @property
    @abstractmethod
    def world_size(self) -> int:
        """Number of cooperating workers."""

    @abstractmethod
    def allreduce_sum(self, array: np.ndarray) -> np.ndarray:
        """Return the element-wise sum of ``array`` across all workers."""


class LocalCommunicator(Communicator):
    """Single-worker communicator; reductions are the identity."""

    @property
    def rank(self) -> int:
        return 0

    @property
    def world_size(self) -> int:
        return 1

    def allreduce_sum(self, array: np.ndarray) -> np.ndarray:
        return np.array(array, copy=True)


class ThreadCommunicator(Communicator):
    """In-memory communicator for workers running as threads of one process."""

    def __init__(self, rank: int, world_size: int, timeout: float | None = None) -> None:
        if world_size <= 0:
            raise ValueError("world_size must be positive")
        if not 0 <= rank < world_size:
            raise ValueError(f"rank {rank} out of range for world_size {world_size}")
        self._rank = rank
        self._world_size = world_size
        self._timeout = timeout
        self._msgboxes: dict[tuple[int, str], Any] = {}
        self._cond = threading.Condition()
        self._counter = 0
        self._aborted: str | None = None
        self.peers: list[ThreadCommunicator] = []
        logger.debug("ThreadCommunicator initialized with rank=%d, world_size=%d", rank, world_size)

    @classmethod
    def group(cls, world_size: int, timeout: float | None = None) -> list["ThreadCommunicator"]:
        """Create ``world_size`` communicators wired to each other."""
        comms = [cls(rank, world_size, timeout=timeout) for rank in range(world_size)]
        for comm in comms:
            comm.set_peers(comms)
        return comms

    @property
    def rank(self) -> int:
        return self._rank

    @property
    def world_size(self) -> int:
        return self._world_size

    def set_peers(self, peers: list["ThreadCommunicator"]) -> None:
        if len(peers) != self._world_size:
            raise ValueError("peer list must contain one communicator per rank")
        self.peers = peers

    def new_id(self) -> str:
        with self._cond:
            res = self._counter
            self._counter += 1
            return str(res)

    def send(self, to: int, key: str, data: Any) -> None:
        self.peers[to].on_sent(self._rank, key, data)

    def on_sent(self, frm: int, key: str, data: Any) -> None:
        with self._cond:
            mkey = (frm, key)
            if mkey in self._msgboxes:
                raise RuntimeError(f"duplicate message {mkey} on rank {self._rank}")
            self._msgboxes[mkey] = data
            self._cond.notify_all()

    def recv(self, frm: int, key: str) -> Any:
        mkey = (frm, key)
        with self._cond:
            ready = self._cond.wait_for(
                lambda: mkey in self._msgboxes or self._aborted is not None,
                timeout=self._timeout,
            )
            if self._aborted is not None:
                raise CommunicatorAborted(f"communicator aborted: {self._aborted}")
            if not ready:
                raise RuntimeError(
                    f"rank {self._rank} timed out waiting for message {key} from rank {frm}"
                )
            return self._msgboxes.pop(mkey)

    def abort(self, reason: str = "peer failure") -> None:
        """Fail every pending and future receive on all ranks of the group."""
        for peer in self.peers or [self]:
            with peer._cond:
                if peer._aborted is None:
                    peer._aborted = reason
                peer._cond.notify_all()

    def allgather(self, data: Any) -> list[Any]:
        cid = self.new_id()
        for idx in range(self._world_size):
            self.send(idx, cid, data)
        return [self.recv(idx, cid) for idx in range(self._world_size)]

    def allreduce_sum(self, array: np.ndarray) -> np.ndarray:
        # Peers read the sent buffer after this rank returns, so it must not alias the caller's.
        local = np.array(array, copy=True, order="C")
        parts = self.allgather(local)
        for rank, part in enumerate(parts):
            if part.shape != local.shape:
                raise RuntimeError(
                    f"allreduce shape mismatch: rank {rank} sent {part.shape}, "
                    f"rank {self._rank} expects {local.shape}"
                )
        out = np.array(parts[0], copy=True)
        for part in parts[1:]:
            out += part
        return out


def run_spmd(
    fn: Callable[[ThreadCommunicator, Any], Any],
    args: Sequence[Any],
    *,
    timeout: float | None = None,
) -> list[Any]:
    """Run ``fn(comm, arg)`` once per entry of ``args`` on its own thread.

    The first worker failure aborts the communicator group so peers blocked in
    a collective fail too, and the original error is re-raised.
    """
    world_size = len(args)
    if world_size == 0:
        raise ValueError("run_spmd requires at least one worker")
    comms = ThreadCommunicator.group(world_size, timeout=timeout)

    def worker(rank: int) -> Any:
        try:
            return fn(comms[rank], args[rank])
        except BaseException as exc:
            comms[rank].abort(f"rank {rank} failed: {exc!r}")
            raise

    with ThreadPoolExecutor(max_workers=world_size) as pool:
        futures = [pool.submit(worker, rank) for rank in range(world_size)]
        errors = [fut.exception() for fut in futures]
    # Prefer the root cause over the aborted-peer errors it triggered.
    for exc in errors:
        if exc is not None and not isinstance(exc, CommunicatorAborted):
            raise exc
    for exc in errors:
        if exc is not None:
            raise exc
    return [fut.result() for fut in futures]
