import argparse
import time

import torch

from packed_fmha import FmhaContext, PhiloxGenerator, mha_bwd, mha_fwd
from packed_fmha.device import DeviceProperties
from packed_fmha.dispatch import KernelBackend
from packed_fmha.kernels import ReferenceKernels

# Host overhead note:
# The null backend skips all kernel work, so the numbers below are validation,
# geometry, allocation, record construction and RNG acquisition only.


class NullKernels(KernelBackend):
    def dense_fwd(self, launch, head_dim_tier, configure=False):
        pass

    def causal_fwd(self, launch, head_dim_tier, configure=False):
        pass

    def dense_bwd(self, launch, head_dim_tier, configure=False):
        pass

    def causal_bwd(self, launch, head_dim_tier, configure=False):
        pass


def bench(fn, warmup=10, iters=50, sync=False):
    for _ in range(warmup):
        fn()
    if sync:
        torch.cuda.synchronize()
    start = time.perf_counter()
    for _ in range(iters):
        fn()
    if sync:
        torch.cuda.synchronize()
    end = time.perf_counter()
    return (end - start) / iters


def make_inputs(B=4, H=4, T=128, D=64, dtype=torch.float16, device="cpu"):
    g = torch.Generator().manual_seed(0)
    lengths = torch.randint(max(T // 2, 1), T + 1, (B,), generator=g).tolist()
    total = sum(lengths)
    offsets = [0]
    for n in lengths:
        offsets.append(offsets[-1] + n)
    cu_seqlens = torch.tensor(offsets, dtype=torch.int32, device=device)
    q, k, v = (torch.randn(total, H, D, generator=g).to(dtype).to(device) for _ in range(3))
    return q, k, v, cu_seqlens, max(lengths)


PRESETS = {
    "small": dict(B=4, H=4, T=128, D=64),
    "medium": dict(B=8, H=8, T=256, D=64),
    "large": dict(B=2, H=16, T=1024, D=128),
}


def make_context(backend, device):
    if device == "cuda":
        return FmhaContext.for_device(device, backend=backend)
    return FmhaContext(
        backend=backend,
        device_props=DeviceProperties(8, 0, "cpu"),
        generator=PhiloxGenerator(seed=0),
        device_type="cpu",
    )


def main():
    parser = argparse.ArgumentParser(description="Bench packed FMHA host orchestration")
    parser.add_argument("--preset", type=str, choices=list(PRESETS.keys()), default=None)
    parser.add_argument("--B", type=int, default=None)
    parser.add_argument("--H", type=int, default=None)
    parser.add_argument("--T", type=int, default=None)
    parser.add_argument("--D", type=int, default=None)
    parser.add_argument("--dtype", type=str, default="float16", choices=["float16", "bfloat16"])
    parser.add_argument("--p-dropout", type=float, default=0.0)
    parser.add_argument("--reference", action="store_true", help="also time the reference kernels")
    parser.add_argument("--iters", type=int, default=50)
    parser.add_argument("--warmup", type=int, default=10)
    args = parser.parse_args()

    device = "cuda" if torch.cuda.is_available() else "cpu"
    cfg = PRESETS.get(args.preset, {})
    B = args.B if args.B is not None else cfg.get("B", 4)
    H = args.H if args.H is not None else cfg.get("H", 4)
    T = args.T if args.T is not None else cfg.get("T", 128)
    D = args.D if args.D is not None else cfg.get("D", 64)

    dtype = getattr(torch, args.dtype)
    q, k, v, cu_seqlens, max_seqlen = make_inputs(B, H, T, D, dtype=dtype, device=device)
    out = torch.empty_like(q)
    dout = torch.randn_like(q)
    dq, dk, dv = torch.empty_like(q), torch.empty_like(k), torch.empty_like(v)
    sync = device == "cuda"

    backends = [("null", NullKernels())]
    if args.reference:
        backends.append(("reference", ReferenceKernels()))

    print(f"B={B} H={H} T={T} D={D} dtype={args.dtype} p_dropout={args.p_dropout} device={device}")
    for name, backend in backends:
        ctx = make_context(backend, device)
        fwd = mha_fwd(q, k, v, out, cu_seqlens, cu_seqlens, max_seqlen, max_seqlen, p_dropout=args.p_dropout, context=ctx)
        lse = fwd.softmax_lse

        def run_fwd():
            mha_fwd(q, k, v, out, cu_seqlens, cu_seqlens, max_seqlen, max_seqlen, p_dropout=args.p_dropout, context=ctx)

        def run_bwd():
            mha_bwd(
                dout, q, k, v, out, lse, dq, dk, dv, cu_seqlens, cu_seqlens, max_seqlen, max_seqlen,
                p_dropout=args.p_dropout, context=ctx,
            )

        t_fwd = bench(run_fwd, warmup=args.warmup, iters=args.iters, sync=sync)
        t_bwd = bench(run_bwd, warmup=args.warmup, iters=args.iters, sync=sync)
        print(f"{name:<10}: fwd {t_fwd*1e3:.3f} ms/iter  bwd {t_bwd*1e3:.3f} ms/iter")


if __name__ == "__main__":
    main()
