from referral_engine.api.routes import admin, referrals

__all__ = [
    "admin",
    "referrals",
]
