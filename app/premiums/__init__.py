"""
Premiums app: M-Pesa collection, commission, settlement and payout.

Related apps:
    - membership: Member, MedicalScheme and MemberSubscription lookups

Usage:
    from premiums.services import CollectionService, InitiateCollectionParams

    result = CollectionService.initiate_collection(
        InitiateCollectionParams(
            payer_id=member.id,
            subscription_id=subscription.id,
            amount=50,
        )
    )
    if result.success:
        token = result.data.correlation_token
"""
