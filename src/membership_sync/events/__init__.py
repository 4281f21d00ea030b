"""Inbound events -- payloads, line-item classification and the pipeline orchestrator.

- OrderCompletedEvent / RegistrationSubmission / StatusChangedEvent: Trigger payloads
- classify_line_item: Category tag to MembershipPurchase | ClassRegistration | EventRegistration
- SyncOrchestrator: Runs each event through the pipeline, collecting per-step errors
- SyncFailureRepository: Persistent failure log behind the operator retry console
"""
