"""
auth — accounts and signed token helpers.

Provides:
  • Register / login with bcrypt password hashes
  • Bearer session tokens (HMAC-SHA256)
  • OAuth ``state`` values carrying the user id through the redirect
"""
