"""
kubestrap/models/pki.py

Defines Pydantic models for the cluster's certificate and token material:
 - AuthToken
 - CertificateBundle
"""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field


class AuthToken(BaseModel):
    """A static bearer token line of the API server's token auth file.

    Attributes:
        token: The secret token value.
        user: User name the token authenticates as.
        uid: User id column of token.csv.
        groups: Groups the user belongs to.
    """

    token: str
    user: str
    uid: str
    groups: List[str] = Field(default_factory=list)

    def csv_line(self) -> str:
        line = f"{self.token},{self.user},{self.uid}"
        if self.groups:
            line += ',"' + ",".join(self.groups) + '"'
        return line


class CertificateBundle(BaseModel):
    """CA material plus one server certificate covering every cluster address.

    Attributes:
        ca_cert_pem / ca_key_pem: Self-signed certificate authority.
        server_cert_pem / server_key_pem: Server certificate signed by the CA.
        subject_names: Deduplicated, sorted SAN entries of the server certificate.
        request_fingerprint: sha256 over the rendered request content; the
            certificate is only re-signed when this changes.
        tokens: Static bearer tokens, preserved across regenerations.
    """

    ca_cert_pem: str
    ca_key_pem: str
    server_cert_pem: str
    server_key_pem: str
    subject_names: List[str]
    request_fingerprint: str
    tokens: List[AuthToken] = Field(default_factory=list)

    def token_for(self, user: str) -> str:
        for tok in self.tokens:
            if tok.user == user:
                return tok.token
        raise KeyError(f"No token issued for user '{user}'.")

    def token_csv(self) -> str:
        return "".join(tok.csv_line() + "\n" for tok in self.tokens)
