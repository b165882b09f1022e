"""
pki_auth — client-certificate authority and certificate-based OAuth2 login.

Issues X.509 client certificates from a root/intermediate CA hierarchy,
authenticates holders by a signature over a one-time challenge, and
turns that proof into OAuth2 authorization codes and tokens (with PKCE).

Built on the Railway-Oriented Programming (ROP) framework for
explicit, composable, functional error handling.
"""

__version__ = "0.1.0"
