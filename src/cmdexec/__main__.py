"""cmdexec 入口点。

支持: python -m cmdexec
"""

from .app import main

if __name__ == "__main__":
    main()
