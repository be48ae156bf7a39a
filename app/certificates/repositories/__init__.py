from app.certificates.repositories.ledger import CertificateLedger

__all__ = ["CertificateLedger"]
