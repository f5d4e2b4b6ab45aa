from importlib import metadata
from pathlib import Path

DISTRIBUTION_NAME = 'imgresolver'


def get_version() -> str:
  version_file = Path(__file__).parent.resolve().with_name('VERSION')
  if version_file.is_file():
    return version_file.read_text().strip()
  # Installed without the source tree
  return metadata.version(DISTRIBUTION_NAME)


version = get_version()
