"""
TDD Machine identity strings.

Shared by the CLI banner, `--version`, and commit trailers.
"""

__version__ = "0.3.0"
__codename__ = "TDD-MACHINE"
__tagline__ = "Red. Green. Refactor. Repeat."

BANNER = r"""
  _____ ____  ____        __  __    _    ____ _   _ ___ _   _ _____
 |_   _|  _ \|  _ \      |  \/  |  / \  / ___| | | |_ _| \ | | ____|
   | | | | | | | | |_____| |\/| | / _ \| |   | |_| || ||  \| |  _|
   | | | |_| | |_| |_____| |  | |/ ___ \ |___|  _  || || |\  | |___
   |_| |____/|____/      |_|  |_/_/   \_\____|_| |_|___|_| \_|_____|
"""
