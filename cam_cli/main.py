from __future__ import annotations

from .apps.cam_admin_cli import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
