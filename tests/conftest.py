import sys
from pathlib import Path

# Ensure the `src` folder is on sys.path when running pytest so imports like
# `from ledger import ...` or `from core import ...` work without needing to
# install the package. The project root is added too so `tools.*` imports
# resolve the same way as running with PYTHONPATH=$(pwd)/src:$(pwd).
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))
sys.path.insert(1, str(ROOT))
