"""Local account directory -- models, schemas, and repositories.

Provides SQLAlchemy models (AccountModel, PaymentRecordModel,
FamilySlotLedgerModel, NotificationMarkerModel, SettingModel), Pydantic
schemas (Account, PaymentRecord, FamilySlotLedger), the async repositories
over them, and SettingsStore for the business mapping tables.
"""
