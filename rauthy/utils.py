"""
File permission and sensitive-memory helpers for the vault.
"""
import platform
import os
import stat
import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Union

from .exceptions import VaultIOError

logger = logging.getLogger(__name__)

if platform.system() == "Windows":
    try:
        import win32security
        import win32api
        import win32con
        import win32file
        WINDOWS_SECURITY_AVAILABLE = True
    except ImportError:
        logger.warning("pywin32 not fully installed, vault files cannot be protected on Windows.")
        WINDOWS_SECURITY_AVAILABLE = False
else:
    WINDOWS_SECURITY_AVAILABLE = False


def _owner_only_dacl():
    """DACL with a single read/write entry for the account running the vault."""
    user_sid, _, _ = win32security.LookupAccountName(None, win32api.GetUserName())
    dacl = win32security.ACL()
    dacl.AddAccessAllowedAce(
        win32security.ACL_REVISION,
        win32con.GENERIC_READ | win32con.GENERIC_WRITE,
        user_sid,
    )
    return dacl


def _protect_windows_file(filepath: str) -> None:
    """
    Replace the file's DACL with an owner-only one and stop inheritance.

    Raises:
        VaultIOError: If pywin32 is missing or Windows refuses the change
    """
    if not WINDOWS_SECURITY_AVAILABLE:
        raise VaultIOError(f"Can't restrict access to {filepath}: pywin32 is not available")

    try:
        handle = win32file.CreateFile(
            filepath,
            win32con.WRITE_DAC,
            win32file.FILE_SHARE_READ | win32file.FILE_SHARE_WRITE | win32file.FILE_SHARE_DELETE,
            None,
            win32con.OPEN_EXISTING,
            win32con.FILE_ATTRIBUTE_NORMAL,
            None,
        )
        try:
            win32security.SetSecurityInfo(
                handle,
                win32security.SE_FILE_OBJECT,
                win32security.DACL_SECURITY_INFORMATION | win32security.PROTECTED_DACL_SECURITY_INFORMATION,
                None,
                None,
                _owner_only_dacl(),
                None,
            )
        finally:
            win32file.CloseHandle(handle)
    except win32api.error as e:
        raise VaultIOError(f"Can't restrict access to {filepath}: {e.strerror} (error {e.winerror})") from e
    logger.debug(f"Owner-only DACL set on {filepath}")


def set_owner_only_permissions(filepath: str) -> None:
    """
    Make a file readable and writable by its owner only.

    Raises:
        VaultIOError: If the permissions could not be changed
    """
    if platform.system() == 'Windows':
        _protect_windows_file(filepath)
        return
    try:
        os.chmod(filepath, stat.S_IRUSR | stat.S_IWUSR)  # 600
    except OSError as e:
        raise VaultIOError(f"Can't restrict access to {filepath}: {e}") from e


def zero_bytes(data: Optional[bytearray]) -> None:
    """Overwrite a mutable buffer with zeros in place."""
    if isinstance(data, bytearray):
        for i in range(len(data)):
            data[i] = 0


def to_secret_buffer(value: Union[str, bytes, bytearray]) -> bytearray:
    """
    Return a wipeable buffer holding a password.

    A bytearray is returned as is, so wiping the result wipes the caller's
    buffer too. Text and bytes are copied.
    """
    if isinstance(value, bytearray):
        return value
    if isinstance(value, str):
        return bytearray(value.encode('utf-8'))
    return bytearray(value)


@contextmanager
def wiped(buffer: bytearray) -> Iterator[bytearray]:
    """Yield ``buffer`` and zero it on every exit path."""
    try:
        yield buffer
    finally:
        zero_bytes(buffer)
