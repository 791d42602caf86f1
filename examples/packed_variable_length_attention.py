"""
Packed variable-length attention with packed_fmha

This example shows:
1. Packing a padded (B, T, H, D) batch into (total, H, D) rows plus cu_seqlens
2. A causal forward and a matching backward through the host layer
3. Replaying the dropout mask in backward by restoring the generator state
4. Unpacking the result back into a padded batch

Usage:
    # CPU, reference kernels against a pretend sm80 device:
    python examples/packed_variable_length_attention.py --device cpu

    # CUDA with the default context:
    python examples/packed_variable_length_attention.py --device cuda --p_dropout 0.1
"""

import argparse

import torch

from packed_fmha import FmhaContext, PhiloxGenerator, mha_bwd, mha_fwd
from packed_fmha.device import DeviceProperties
from packed_fmha.kernels import ReferenceKernels


def pack(padded: torch.Tensor, lengths):
    """(B, T, H, D) padded batch -> (total, H, D) rows and int32 offsets."""
    rows = torch.cat([padded[b, :n] for b, n in enumerate(lengths)], dim=0)
    offsets = [0]
    for n in lengths:
        offsets.append(offsets[-1] + n)
    return rows.contiguous(), torch.tensor(offsets, dtype=torch.int32, device=padded.device)


def unpack(rows: torch.Tensor, cu_seqlens: torch.Tensor, T: int):
    offsets = cu_seqlens.tolist()
    B = len(offsets) - 1
    padded = rows.new_zeros(B, T, *rows.shape[1:])
    for b in range(B):
        n = offsets[b + 1] - offsets[b]
        padded[b, :n] = rows[offsets[b]:offsets[b + 1]]
    return padded


def make_context(device):
    if device == "cuda":
        return FmhaContext.for_device(device)
    return FmhaContext(
        backend=ReferenceKernels(),
        device_props=DeviceProperties(8, 0, "cpu"),
        generator=PhiloxGenerator(seed=0),
        device_type="cpu",
    )


def main():
    parser = argparse.ArgumentParser(description="Packed variable-length attention example")
    parser.add_argument("--device", type=str, default="cuda" if torch.cuda.is_available() else "cpu")
    parser.add_argument("--n_heads", type=int, default=4)
    parser.add_argument("--head_dim", type=int, default=64)
    parser.add_argument("--p_dropout", type=float, default=0.0)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    torch.manual_seed(0)
    lengths = [3, 17, 9, 30]
    T, H, D = max(lengths), args.n_heads, args.head_dim
    ctx = make_context(args.device)

    padded = [torch.randn(len(lengths), T, H, D).half().to(args.device) for _ in range(3)]
    (q, cu_seqlens), (k, _), (v, _) = (pack(x, lengths) for x in padded)

    snapshot = ctx.generator.get_state()
    fwd = mha_fwd(q, k, v, torch.empty_like(q), cu_seqlens, cu_seqlens, T, T,
                  p_dropout=args.p_dropout, is_causal=True, context=ctx)

    dout = torch.randn_like(q)
    dq, dk, dv = torch.empty_like(q), torch.empty_like(k), torch.empty_like(v)
    ctx.generator.set_state(snapshot)
    mha_bwd(dout, q, k, v, fwd.out, fwd.softmax_lse, dq, dk, dv, cu_seqlens, cu_seqlens, T, T,
            p_dropout=args.p_dropout, is_causal=True, context=ctx)

    out = unpack(fwd.out, cu_seqlens, T)
    if args.verbose:
        print(f"packed q: {tuple(q.shape)}  cu_seqlens: {cu_seqlens.tolist()}")
        print(f"softmax_lse: {tuple(fwd.softmax_lse.shape)}")
        print(f"|dq|={dq.float().norm():.4f} |dk|={dk.float().norm():.4f} |dv|={dv.float().norm():.4f}")
    print(f"out: {tuple(out.shape)} finite={bool(torch.isfinite(out.float()).all())}")


if __name__ == "__main__":
    main()
