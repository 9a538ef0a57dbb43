import numpy as np
import pytest

from histree.comm import CommunicatorAborted, LocalCommunicator, ThreadCommunicator, run_spmd


def test_local_communicator_is_identity_copy():
    comm = LocalCommunicator()
    data = np.arange(4.0)
    out = comm.allreduce_sum(data)
    np.testing.assert_array_equal(out, data)
    out[0] = 99.0
    assert data[0] == 0.0
    assert (comm.rank, comm.world_size) == (0, 1)


@pytest.mark.parametrize("world_size", [1, 2, 5])
def test_thread_allreduce_sums_in_rank_order(world_size: int):
    def worker(comm, rank):
        first = comm.allreduce_sum(np.full((2, 3), float(rank + 1)))
        second = comm.allreduce_sum(np.array([rank], dtype=np.int64))
        return first, second

    results = run_spmd(worker, list(range(world_size)))
    expected = world_size * (world_size + 1) / 2
    for first, second in results:
        np.testing.assert_array_equal(first, np.full((2, 3), expected))
        assert second[0] == sum(range(world_size))


def test_shape_mismatch_is_fatal():
    with pytest.raises(RuntimeError, match="shape mismatch"):
        run_spmd(lambda comm, n: comm.allreduce_sum(np.zeros(n)), [2, 3])


def test_worker_failure_aborts_peers_and_surfaces_root_cause():
    def worker(comm, rank):
        if rank == 1:
            raise ValueError("bad shard")
        return comm.allreduce_sum(np.ones(2))

    with pytest.raises(ValueError, match="bad shard"):
        run_spmd(worker, [0, 1, 2])


def test_abort_fails_pending_receives_on_every_rank():
    comms = ThreadCommunicator.group(3)
    comms[2].abort("rank 2 failed")
    for comm in comms:
        with pytest.raises(CommunicatorAborted, match="rank 2 failed"):
            comm.recv(0, "never-sent")


def test_root_cause_is_selected_by_type_not_message():
    def worker(comm, rank):
        if rank == 0:
            raise RuntimeError("communicator aborted by the caller")
        return comm.allreduce_sum(np.ones(2))

    with pytest.raises(RuntimeError, match="by the caller") as excinfo:
        run_spmd(worker, [0, 1, 2])
    assert not isinstance(excinfo.value, CommunicatorAborted)


def test_receive_timeout():
    comms = ThreadCommunicator.group(2, timeout=0.05)
    with pytest.raises(RuntimeError, match="timed out"):
        comms[0].allreduce_sum(np.ones(2))


def test_invalid_group_arguments():
    with pytest.raises(ValueError):
        ThreadCommunicator(2, 2)
    with pytest.raises(ValueError):
        run_spmd(lambda comm, arg: arg, [])
