from pulse_gateway.utils.encryption import CredentialVault, EncryptedSecret, EncryptionError
from pulse_gateway.utils.redaction import redact_known, redact_secrets
from pulse_gateway.utils.tokens import estimate_tokens, hash_prompt

__all__ = [
    "CredentialVault",
    "EncryptedSecret",
    "EncryptionError",
    "estimate_tokens",
    "hash_prompt",
    "redact_known",
    "redact_secrets",
]
