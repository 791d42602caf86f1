import torch

from packed_fmha import FmhaContext, PhiloxGenerator, mha_bwd, mha_fwd
from packed_fmha.device import DeviceProperties
from packed_fmha.kernels import ReferenceKernels

device = "cuda" if torch.cuda.is_available() else "cpu"
if device == "cuda":
    ctx = FmhaContext.for_device(device)
else:
    ctx = FmhaContext(
        backend=ReferenceKernels(),
        device_props=DeviceProperties(8, 0, "cpu"),
        generator=PhiloxGenerator(seed=0),
        device_type="cpu",
    )

seqlens = [5, 12, 7]
cu_seqlens = torch.tensor([0, 5, 17, 24], dtype=torch.int32, device=device)
q = torch.randn(24, 2, 32).half().to(device)
k = torch.randn(24, 2, 32).half().to(device)
v = torch.randn(24, 2, 32).half().to(device)

fwd = mha_fwd(q, k, v, torch.empty_like(q), cu_seqlens, cu_seqlens, max(seqlens), max(seqlens), is_causal=True, context=ctx)
dq, dk, dv = torch.empty_like(q), torch.empty_like(k), torch.empty_like(v)
mha_bwd(
    torch.ones_like(q), q, k, v, fwd.out, fwd.softmax_lse, dq, dk, dv,
    cu_seqlens, cu_seqlens, max(seqlens), max(seqlens), is_causal=True, context=ctx,
)

assert torch.isfinite(dq.float()).all()
print("OK")
