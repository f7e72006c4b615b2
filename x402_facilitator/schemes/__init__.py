from x402_facilitator.schemes.exact_evm import SCHEME as EXACT, ExactEvmVerifier
from x402_facilitator.schemes.exact_svm import ExactSvmVerifier

__all__ = ["EXACT", "ExactEvmVerifier", "ExactSvmVerifier"]
