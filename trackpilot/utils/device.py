from __future__ import annotations

from typing import Union

import torch


def resolve_torch_device(device_str: Union[str, torch.device, None] = "auto") -> torch.device:
    """Resolve a requested device string into a torch.device.

    Supported:
      - None / "auto": cuda if available else cpu
      - "cuda" / "cuda:N": cuda (errors if unavailable or N out of range)
      - "cpu": cpu
      - an existing torch.device is returned unchanged
    """

    if isinstance(device_str, torch.device):
        return device_str

    device_str = "auto" if device_str is None else str(device_str).strip().lower()

    if device_str == "auto":
        if bool(torch.cuda.is_available()):
            return torch.device("cuda")
        return torch.device("cpu")

    device = torch.device(device_str)
    if device.type == "cuda":
        if not bool(torch.cuda.is_available()):
            raise RuntimeError(
                f"Requested device='{device_str}' but CUDA is not available. Use --device cpu or --device auto."
            )
        if device.index is not None and device.index >= torch.cuda.device_count():
            raise RuntimeError(f"Requested device='{device_str}' but only {torch.cuda.device_count()} GPU(s) found.")
    return device


def release_device_memory(device: torch.device) -> None:
    """Return cached allocator blocks to the driver (no-op on cpu)."""
    if device.type == "cuda" and bool(torch.cuda.is_available()):
        torch.cuda.empty_cache()
