"""
Reference kernels for packed FMHA (PyTorch, no fusion).

Executes the launch records the host layer builds, one sequence at a time, in
fp32. Slow, but it reads the same pointers-by-name the fused kernels would and
honours the same contracts: causal masking, block masks, the dropout stream
derived from the Philox state, split dq accumulation and the softmax dump.
Used as the default backend and as the ground truth for the host layer tests.
"""

import math

import torch

from packed_fmha.dispatch import KernelBackend
from packed_fmha.geometry import BLOCK_SPARSE_TILE, QUERY_TILE
from packed_fmha.params import ForwardParams, LaunchParams


def dropout_keep_mask(params: ForwardParams, batch_idx: int, seqlen_q: int, seqlen_k: int, device=None) -> torch.Tensor:
    """
    Keep mask (H, seqlen_q, seqlen_k) for one sequence.

    A function of (seed, offset, batch index) only, so a backward that restores
    the generator state sees the forward's mask. Element kept when the 32-bit
    draw is <= p_dropout_in_uint.
    """
    state = params.philox_args
    if state is None:
        raise RuntimeError("dropout launch without a philox state")
    gen = torch.Generator(device="cpu")
    gen.manual_seed((state.seed * 1_000_003 + state.offset * 8_191 + batch_idx) % (2**63))
    draws = torch.randint(0, 2**32, (params.h, seqlen_q, seqlen_k), generator=gen, dtype=torch.int64)
    keep = draws <= params.p_dropout_in_uint
    return keep.to(device) if device is not None else keep


def _allowed(params: ForwardParams, seqlen_q: int, seqlen_k: int, blockmask, device) -> torch.Tensor:
    # (seqlen_q, seqlen_k) bool
    allowed = torch.ones(seqlen_q, seqlen_k, dtype=torch.bool, device=device)
    if params.is_causal:
        allowed = allowed.tril()
    if blockmask is not None:
        selected = (blockmask != 0).to(device)
        selected = selected.repeat_interleave(BLOCK_SPARSE_TILE, dim=0).repeat_interleave(QUERY_TILE, dim=1)
        allowed = allowed & selected[:seqlen_k, :seqlen_q].transpose(0, 1)
    return allowed


def _heads_first(t: torch.Tensor, start: int, end: int) -> torch.Tensor:
    return t[start:end].transpose(0, 1).float()


def _scores(params: ForwardParams, q_: torch.Tensor, k_: torch.Tensor, allowed: torch.Tensor) -> torch.Tensor:
    scores = torch.matmul(q_, k_.transpose(-2, -1)) * params.scale_bmm1f  # (H, sq, sk)
    return scores.masked_fill(~allowed, float("-inf"))


class ReferenceKernels(KernelBackend):
    """Every (variant, direction) pair on top of two sequence loops."""

    def dense_fwd(self, launch: LaunchParams, head_dim_tier: int, configure: bool = False) -> None:
        if not configure:
            self._forward(launch)

    def causal_fwd(self, launch: LaunchParams, head_dim_tier: int, configure: bool = False) -> None:
        # Causality is carried by params.is_causal.
        self.dense_fwd(launch, head_dim_tier, configure=configure)

    def block_fwd(self, launch: LaunchParams, head_dim_tier: int, configure: bool = False) -> None:
        if configure:
            p = launch.params
            launch.elts_per_thread = math.ceil(p.seqlen_q * p.seqlen_k / 128)
            return
        self._forward(launch, blockmask=launch.tensors["blockmask"])

    def dense_bwd(self, launch: LaunchParams, head_dim_tier: int, configure: bool = False) -> None:
        if configure:
            if launch.params.num_splits == 0:
                launch.params.num_splits = 1
            return
        self._backward(launch)

    def causal_bwd(self, launch: LaunchParams, head_dim_tier: int, configure: bool = False) -> None:
        self.dense_bwd(launch, head_dim_tier, configure=configure)

    def block_bwd(self, launch: LaunchParams, head_dim_tier: int, configure: bool = False) -> None:
        if not configure:
            self._backward(launch, blockmask=launch.tensors["blockmask"])

    @torch.no_grad()
    def _forward(self, launch: LaunchParams, blockmask=None) -> None:
        p = launch.params
        t = launch.tensors
        q, k, v, o = t["q"], t["k"], t["v"], t["o"]
        o_tmp = t.get("o_tmp")
        s = t.get("s")
        lse = t["softmax_lse"]
        cu_q = t["cu_seqlens_q"].tolist()
        cu_k = t["cu_seqlens_k"].tolist()

        for b in range(p.b):
            q0, q1 = cu_q[b], cu_q[b + 1]
            k0, k1 = cu_k[b], cu_k[b + 1]
            sq, sk = q1 - q0, k1 - k0
            if sq == 0:
                continue

            allowed = _allowed(p, sq, sk, blockmask, q.device)
            scores = _scores(p, _heads_first(q, q0, q1), _heads_first(k, k0, k1), allowed)
            lse_b = torch.logsumexp(scores, dim=-1)  # (H, sq)
            empty = torch.isneginf(lse_b)
            probs = torch.exp(scores - lse_b.masked_fill(empty, 0.0).unsqueeze(-1))

            if launch.is_dropout:
                keep = dropout_keep_mask(p, b, sq, sk, device=q.device)
                dropped = probs * keep * p.rp_dropout
            else:
                keep = None
                dropped = probs

            out = torch.matmul(dropped, _heads_first(v, k0, k1))  # (H, sq, D)
            o[q0:q1] = out.transpose(0, 1).to(o.dtype)
            if o_tmp is not None:
                o_tmp[q0:q1] = out.transpose(0, 1)
            # Empty rows report +inf so backward reconstructs zero probabilities.
            lse[b, :, :sq] = lse_b.masked_fill(empty, float("inf"))

            if s is not None:
                dump = probs if keep is None else torch.where(keep, probs, -probs)
                s[b, :, :sq, :sk] = dump.to(s.dtype)

    @torch.no_grad()
    def _backward(self, launch: LaunchParams, blockmask=None) -> None:
        p = launch.params
        t = launch.tensors
        q, k, v, o, do = t["q"], t["k"], t["v"], t["o"], t["do"]
        dq, dk, dv = t["dq"], t["dk"], t["dv"]
        dq_tmp = t.get("dq_tmp")
        lse = t["softmax_lse"]
        softmax_d = t["dsoftmax_sum"]
        cu_q = t["cu_seqlens_q"].tolist()
        cu_k = t["cu_seqlens_k"].tolist()
        write_dq = dq_tmp is None or p.num_splits == 1

        for b in range(p.b):
            q0, q1 = cu_q[b], cu_q[b + 1]
            k0, k1 = cu_k[b], cu_k[b + 1]
            # Empty sequences still write zero gradients for their rows.
            sq, sk = q1 - q0, k1 - k0

            q_ = _heads_first(q, q0, q1)
            k_ = _heads_first(k, k0, k1)
            v_ = _heads_first(v, k0, k1)
            o_ = _heads_first(o, q0, q1)
            do_ = _heads_first(do, q0, q1)

            allowed = _allowed(p, sq, sk, blockmask, q.device)
            scores = _scores(p, q_, k_, allowed)
            probs = torch.exp(scores - lse[b, :, :sq].unsqueeze(-1))

            if launch.is_dropout:
                keep = dropout_keep_mask(p, b, sq, sk, device=q.device) * p.rp_dropout
            else:
                keep = torch.ones((), device=q.device)

            dv_ = torch.matmul((probs * keep).transpose(-2, -1), do_)
            dp = torch.matmul(do_, v_.transpose(-2, -1)) * keep
            d_sum = (do_ * o_).sum(dim=-1)  # (H, sq)
            ds = probs * (dp - d_sum.unsqueeze(-1))
            dq_ = torch.matmul(ds, k_) * p.scale_bmm1f
            dk_ = torch.matmul(ds.transpose(-2, -1), q_) * p.scale_bmm1f

            softmax_d[b, :, :sq] = d_sum
            dk[k0:k1] = dk_.transpose(0, 1).to(dk.dtype)
            dv[k0:k1] = dv_.transpose(0, 1).to(dv.dtype)
            if dq_tmp is not None and p.num_splits > 1:
                dq_tmp[q0:q1] += dq_.transpose(0, 1)
            elif dq_tmp is not None:
                dq_tmp[q0:q1] = dq_.transpose(0, 1)
            if write_dq:
                dq[q0:q1] = dq_.transpose(0, 1).to(dq.dtype)


__all__ = ["ReferenceKernels", "dropout_keep_mask"]
