from __future__ import annotations

import sys
from pathlib import Path

# Ensure `import vidtube...` works when running pytest without an installed package.
BACKEND_ROOT = Path(__file__).resolve().parent
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))
