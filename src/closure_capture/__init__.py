"""closure_capture package root."""

from closure_capture.capabilities import (
    Downgradeable,
    Upgradeable,
    clone,
    compile_error,
    downgrade,
    upgrade,
    upgrade_failed,
)
from closure_capture.decorators import closure, with_closure
from closure_capture.directives import CaptureDirective, CaptureMode, parse_capture_list
from closure_capture.exceptions import (
    CaptureError,
    CaptureSyntaxError,
    DirectiveSyntaxError,
    UpgradeError,
)
from closure_capture.rewriter import RewriteResult, expand_item_source, rewrite_source

__all__ = [
    "__version__",
    "CaptureDirective",
    "CaptureError",
    "CaptureMode",
    "CaptureSyntaxError",
    "DirectiveSyntaxError",
    "Downgradeable",
    "RewriteResult",
    "UpgradeError",
    "Upgradeable",
    "clone",
    "closure",
    "compile_error",
    "downgrade",
    "expand_item_source",
    "parse_capture_list",
    "rewrite_source",
    "upgrade",
    "upgrade_failed",
    "with_closure",
]

__version__ = "0.1.0"
