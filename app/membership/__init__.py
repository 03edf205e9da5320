"""
Membership lookups consumed by the premiums engine.

Members, medical schemes and subscriptions are managed elsewhere on the
platform. This app holds only the columns the collection, commission
and payout flows read: phone numbers, referral tier assignments and the
per-scheme portion/commission rates.
"""
