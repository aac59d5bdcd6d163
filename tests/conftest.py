"""
Shared pytest setup.

Points the application home at a throwaway directory before the package is
imported, so log, debug and cache files never land in the user's profile.
"""

import os
import tempfile

os.environ.setdefault("CHAPTER_ENHANCER_HOME", tempfile.mkdtemp(prefix="chapter-enhancer-tests-"))
