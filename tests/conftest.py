from __future__ import annotations

from pathlib import Path
import sys

_SRC = Path(__file__).resolve().parents[1] / 'src'

# Prefer the working tree over any installed copy of mentor_review.
if _SRC.is_dir():
    _src_text = str(_SRC)
    sys.path[:] = [_src_text] + [p for p in sys.path if p and Path(p).resolve() != _SRC]
