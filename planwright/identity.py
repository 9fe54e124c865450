"""
PLANWRIGHT Identity

Single source of truth for the name, version and banner.
"""

__codename__ = "PLANWRIGHT"
__tagline__ = "Plan it. Approve it. Ship it."
__version__ = "0.4.0"

BANNER = r"""
  ___ _              __      __    _      _   _
 | _ \ |__ _ _ _  _ _\ \    / / __(_)__ _| |_| |_
 |  _/ / _` | ' \| ' \\ \/\/ / '_| / _` | ' \  _|
 |_| |_\__,_|_||_|_||_|\_/\_/|_| |_\__, |_||_\__|
                                   |___/
"""
