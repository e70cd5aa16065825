"""Reconstructable handles and closure capture records."""

from reconpy.reconstruct.handle import (
    ReconstructableHandle,
    CaptureRecord,
    wrap,
    reconstruct,
    identity,
    is_reconstructable,
    can_reconstruct,
    reconstruct_args,
    reconstruct_capture,
)
