"""
Configuration constants for the Rauthy authenticator vault.
"""

import os

# Application Metadata
APP_VERSION = "0.4.0"  # Use: Current version of the application. Type: str. Range: Semantic versioning string (e.g., "1.0.0")
APP_NAME = "Rauthy Authenticator"  # Use: Full name of the application. Type: str. Range: Any valid string.
APP_DISCLAIMER = """  # Use: Notice printed by the command-line front end. Type: str (multi-line). Range: Any valid string.
Rauthy keeps your one-time-password secrets in a single encrypted file on
this device. Nothing is synchronised or transmitted, apart from the optional
brand icon lookup, which only ever sends the issuer name.
"""

# Security Settings
SALT_SIZE = 32  # Use: Size of the random salt appended to current-format vault files. Type: int. Range: 32 bytes (256 bits); changing it breaks existing vaults.
KEY_SIZE = 32  # Use: Size of the encryption key in bytes. Corresponds to AES-256. Type: int. Range: 32 bytes only; the vault cipher is AES-256-GCM.
NONCE_SIZE = 12  # Use: Size of the Nonce (Number used once) in bytes for AES-GCM. Type: int. Range: 12 bytes (96 bits) is the recommended size for GCM.
TAG_SIZE = 16  # Use: Size of the authentication tag in bytes for AES-GCM. Type: int. Range: 16 bytes (128 bits) is the recommended size for GCM.
PBKDF2_ITERATIONS = 100000  # Use: Number of iterations for PBKDF2-HMAC-SHA256 key derivation. Type: int. Range: Fixed at 100,000; existing vaults were written with this value.
LEGACY_SALT = b"E3D0C30656C194272C7B6AD2ED0B7F8078FF2921F777A142A045D45931BC2771"  # Use: Hard-coded salt of pre-migration vaults, used only to read and migrate them. Type: bytes. Range: Must match what older releases wrote; never used for new vaults.

# TOTP Settings
TOTP_DEFAULT_ALGORITHM = "SHA1"  # Use: Hash algorithm used when a provisioning URI does not name one. Type: str. Range: "SHA1", "SHA256" or "SHA512".
TOTP_DEFAULT_DIGITS = 6  # Use: Code length used when a provisioning URI does not name one. Type: int. Range: 6 or 8 in practice.
TOTP_DEFAULT_PERIOD = 30  # Use: Validity window in seconds used when a provisioning URI does not name one. Type: int. Range: Positive integer.
TOTP_STRICT_DIGITS = (6, 7, 8)  # Use: Code lengths accepted by the strict URI parser. Longer/shorter values go through the permissive parser. Type: tuple[int]. Range: Subset of 1..10.
TOTP_MAX_DIGITS = 10  # Use: Longest code length any parser accepts; pyotp refuses more. Type: int. Range: 1..10.
TOTP_MAX_PERIOD = 2 ** 64 - 1  # Use: Longest validity window in seconds the vault file can store. Type: int. Range: Positive integer below 2**64.
TOTP_MIN_SECRET_BYTES = 16  # Use: Minimum decoded secret size (128 bits) for the strict URI parser and token engine. Type: int. Range: Positive integer.
OTPAUTH_SCHEME = "otpauth"  # Use: URI scheme of provisioning URIs. Type: str. Range: "otpauth".
OTPAUTH_TYPE = "totp"  # Use: URI host naming the OTP type. Only time-based codes are supported. Type: str. Range: "totp".

# Icon Lookup Settings
BRANDFETCH_SEARCH_URL = "https://api.brandfetch.io/v2/search/{name}"  # Use: Brand search endpoint used to find an icon for an issuer. Type: str (format string). Range: URL with a {name} placeholder.
BRANDFETCH_CLIENT_ID_ENV = "BRANDFETCH_CLIENT_ID"  # Use: Environment variable holding the brand search client id. Lookups are skipped when unset. Type: str. Range: Any valid environment variable name.
ICON_LOOKUP_TIMEOUT_SECONDS = 5  # Use: Timeout for a single icon lookup request. Type: int. Range: Positive integer.

# File and Directory Names
CONFIG_DIR_NAME = ".rauthy"  # Use: Name of the hidden directory within the user's home directory where the vault is stored. Type: str. Range: Any valid directory name.
DATA_DIR_ENV = "RAUTHY_DATA_DIR"  # Use: Environment variable overriding the vault directory. Type: str. Range: Any valid environment variable name.
PASSWORD_ENV = "RAUTHY_PASSWORD"  # Use: Environment variable the command-line front end reads the vault password from instead of prompting. Type: str. Range: Any valid environment variable name.
STORAGE_FILE = "Rauthy.bin"  # Use: File name of the encrypted vault inside the data directory. Type: str. Range: Fixed; older releases look for the same name.
TEMP_FILE_SUFFIX = ".tmp"  # Use: Suffix of the temporary file written before atomically replacing the vault. Type: str. Range: Any valid filename suffix.

# Logging
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'  # Use: Format string for log records emitted by the command-line front end. Type: str. Range: Any logging format string.
LOG_LEVEL = os.environ.get("RAUTHY_LOG_LEVEL", "WARNING")  # Use: Default log level of the command-line front end. Type: str. Range: Standard logging level names.
