import threading

import torch

from packed_fmha.rng import (
    PhiloxGenerator,
    PhiloxState,
    acquire_philox_state,
    counter_offset,
    default_generator,
)


def test_counter_offset():
    assert counter_offset(2, 3) == 2 * 3 * 32
    assert counter_offset(1, 1) == 32


def test_offset_advances_in_multiples_of_four():
    gen = PhiloxGenerator(seed=7)
    first = acquire_philox_state(gen, 5)
    second = acquire_philox_state(gen, 4)
    third = acquire_philox_state(gen, 1)
    assert first == PhiloxState(seed=7, offset=0)
    assert second.offset == 8
    assert third.offset == 12
    assert gen.get_state().offset == 16


def test_state_snapshot_replays_offsets():
    gen = PhiloxGenerator(seed=3)
    acquire_philox_state(gen, 64)
    snapshot = gen.get_state()
    a = acquire_philox_state(gen, 64)
    gen.set_state(snapshot)
    b = acquire_philox_state(gen, 64)
    assert a == b


def test_manual_seed_resets_offset():
    gen = PhiloxGenerator(seed=1, offset=100)
    gen.manual_seed(42)
    assert gen.get_state() == PhiloxState(seed=42, offset=0)
    assert gen.seed == 42


def test_from_torch_generator():
    g = torch.Generator().manual_seed(1234)
    assert PhiloxGenerator.from_torch(g).seed == 1234


def test_concurrent_acquires_get_disjoint_offsets():
    gen = PhiloxGenerator(seed=0)
    n_threads, per_thread = 8, 50
    offsets = []
    lock = threading.Lock()

    def worker():
        local = [acquire_philox_state(gen, 4).offset for _ in range(per_thread)]
        with lock:
            offsets.extend(local)

    threads = [threading.Thread(target=worker) for _ in range(n_threads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(offsets) == n_threads * per_thread
    assert len(set(offsets)) == len(offsets)
    assert gen.get_state().offset == n_threads * per_thread * 4


def test_default_generator_is_per_device():
    cpu = default_generator(torch.device("cpu"))
    assert isinstance(cpu, PhiloxGenerator)
    assert default_generator("cpu") is cpu
    assert default_generator("cpu:0") is cpu


def test_cuda_aliases_share_one_generator(monkeypatch):
    # Device objects need no GPU; only the current-device lookup does.
    monkeypatch.setattr(torch.cuda, "current_device", lambda: 0)
    bare = default_generator("cuda")
    assert default_generator(torch.device("cuda", 0)) is bare
    assert default_generator("cuda:0") is bare
    assert default_generator(None) is bare

    first = acquire_philox_state(bare, 32)
    second = acquire_philox_state(default_generator("cuda:0"), 32)
    assert second.offset == first.offset + 32
