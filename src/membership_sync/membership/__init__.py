"""Membership lifecycle engine.

- IdentityResolver: Find-or-create the remote constituent for an account
- MembershipStateMachine: Derived lifecycle state, renewal and deactivation
- PaymentRecorder: At most one remote gift per local order id
- FamilyPropagator: Dependent linking, slot ledger and state cascades
- NotificationDispatcher: Day-offset to template mapping and delivery
- RenewalSweeper / SweepScheduler: Daily sweep and its cron trigger
"""
