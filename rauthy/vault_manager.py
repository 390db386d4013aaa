import os
import stat
from typing import Optional
from . import config

def get_data_dir() -> str:
    """
    Returns the application-private directory holding the vault.
    RAUTHY_DATA_DIR overrides the default of ~/.rauthy.
    """
    override = os.environ.get(config.DATA_DIR_ENV)
    if override:
        return os.path.abspath(os.path.expanduser(override))
    return os.path.join(os.path.expanduser("~"), config.CONFIG_DIR_NAME)

def ensure_data_dir(path: Optional[str] = None) -> str:
    """
    Creates the data directory if needed and restricts it to the owner.
    Returns the directory path.
    """
    data_dir = path or get_data_dir()
    os.makedirs(data_dir, exist_ok=True)
    if os.name == 'posix':
        os.chmod(data_dir, stat.S_IRWXU)  # 700
    return data_dir

def vault_path(base_dir: Optional[str] = None) -> str:
    """Full path of the vault file inside ``base_dir``."""
    return os.path.join(base_dir or get_data_dir(), config.STORAGE_FILE)

def vault_exists(base_dir: Optional[str] = None) -> bool:
    return os.path.isfile(vault_path(base_dir))
