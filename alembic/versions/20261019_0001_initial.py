"""
Initial schema: users, plans, payments, events, guests, photos, discounts, logs.

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "Users",
        sa.Column("UserID", sa.String(length=128), primary_key=True),
        sa.Column("Email", sa.String(length=255), nullable=True),
        sa.Column("FullName", sa.String(length=200), nullable=True),
        sa.Column("IsAnonymous", sa.Boolean(), nullable=True),
        sa.Column("IsAdmin", sa.Boolean(), nullable=True),
        sa.Column("DateCreated", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("LastUpdated", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "PricingPlan",
        sa.Column("PlanID", sa.String(length=64), primary_key=True),
        sa.Column("Name", sa.String(length=100), nullable=False),
        sa.Column("Description", sa.String(length=255), nullable=True),
        sa.Column("BasePrice", sa.Numeric(10, 2), nullable=False),
        sa.Column("GuestLimit", sa.Integer(), nullable=False),
        sa.Column("PhotoPool", sa.Integer(), nullable=False),
        sa.Column("PhotosPerGuest", sa.Integer(), nullable=True),
        sa.Column("GuestOveragePrice", sa.Numeric(10, 4), nullable=False),
        sa.Column("PhotoOveragePrice", sa.Numeric(10, 4), nullable=False),
        sa.Column("StorageOptions", sa.Text(), nullable=True),
        sa.Column("DefaultStorageDays", sa.Integer(), nullable=True),
        sa.Column("RevenueCatProductID", sa.String(length=128), nullable=True),
        sa.Column("IsActive", sa.Boolean(), nullable=True),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("UpdatedAt", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "Overlay",
        sa.Column("OverlayID", sa.String(length=36), primary_key=True),
        sa.Column("OwnerUserID", sa.String(length=128), sa.ForeignKey("Users.UserID"), nullable=True),
        sa.Column("Name", sa.String(length=255), nullable=False),
        sa.Column("Url", sa.String(length=500), nullable=False),
        sa.Column("StorageKey", sa.String(length=500), nullable=True),
        sa.Column("IsActive", sa.Boolean(), nullable=True),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_Overlay_OwnerUserID", "Overlay", ["OwnerUserID"])

    op.create_table(
        "Payment",
        sa.Column("PaymentID", sa.String(length=255), primary_key=True),
        sa.Column("Provider", sa.String(length=32), nullable=False),
        sa.Column("UserID", sa.String(length=128), nullable=False),
        sa.Column("PlanID", sa.String(length=64), nullable=False),
        sa.Column("CustomPlan", sa.Text(), nullable=True),
        sa.Column("Currency", sa.String(length=8), nullable=False),
        sa.Column("TotalAmount", sa.Numeric(10, 2), nullable=False),
        sa.Column("OriginalPrice", sa.Numeric(10, 2), nullable=False),
        sa.Column("DiscountCode", sa.String(length=64), nullable=True),
        sa.Column("DiscountAmount", sa.Numeric(10, 2), nullable=False),
        sa.Column("ProviderStatus", sa.String(length=64), nullable=True),
        sa.Column("Status", sa.String(length=16), nullable=False),
        sa.Column("IsFreePlan", sa.Boolean(), nullable=True),
        sa.Column("UserEmail", sa.String(length=255), nullable=True),
        sa.Column("ProviderCustomerID", sa.String(length=255), nullable=True),
        sa.Column("CaptureID", sa.String(length=255), nullable=True),
        sa.Column("RefundID", sa.String(length=255), nullable=True),
        sa.Column("RefundReason", sa.String(length=255), nullable=True),
        sa.Column("IsUpgrade", sa.Boolean(), nullable=True),
        sa.Column("TargetEventID", sa.String(length=36), nullable=True),
        sa.Column("ExistingPrice", sa.Numeric(10, 2), nullable=True),
        sa.Column("NewPlanPrice", sa.Numeric(10, 2), nullable=True),
        sa.Column("UpgradeDelta", sa.Numeric(10, 2), nullable=True),
        sa.Column("ConsumedByEventID", sa.String(length=36), nullable=True),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("UpdatedAt", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_Payment_UserID", "Payment", ["UserID"])

    op.create_table(
        "PaymentLog",
        sa.Column("LogID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("PaymentID", sa.String(length=255), nullable=True),
        sa.Column("UserID", sa.String(length=128), nullable=True),
        sa.Column("Provider", sa.String(length=32), nullable=False),
        sa.Column("EventType", sa.String(length=64), nullable=False),
        sa.Column("Payload", sa.Text(), nullable=True),
        sa.Column("ErrorMessage", sa.Text(), nullable=True),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_PaymentLog_PaymentID", "PaymentLog", ["PaymentID"])

    op.create_table(
        "Event",
        sa.Column("EventID", sa.String(length=36), primary_key=True),
        sa.Column("UserID", sa.String(length=128), sa.ForeignKey("Users.UserID"), nullable=False),
        sa.Column("Name", sa.String(length=255), nullable=False),
        sa.Column("Type", sa.String(length=64), nullable=True),
        sa.Column("EventDate", sa.DateTime(), nullable=False),
        sa.Column("EventStartTime", sa.String(length=5), nullable=False),
        sa.Column("EventEndTime", sa.String(length=5), nullable=False),
        sa.Column("EventEndDate", sa.DateTime(), nullable=True),
        sa.Column("TimeZone", sa.String(length=64), nullable=False),
        sa.Column("BrandColor", sa.String(length=32), nullable=True),
        sa.Column("Typography", sa.String(length=64), nullable=True),
        sa.Column("FontStyle", sa.String(length=64), nullable=True),
        sa.Column("FontSize", sa.String(length=16), nullable=True),
        sa.Column("EventPictureUrl", sa.String(length=500), nullable=True),
        sa.Column("OverlayID", sa.String(length=36), nullable=True),
        sa.Column("OverlayUrl", sa.String(length=500), nullable=True),
        sa.Column("OverlayName", sa.String(length=255), nullable=True),
        sa.Column("PlanID", sa.String(length=64), nullable=False),
        sa.Column("BasePlanName", sa.String(length=100), nullable=True),
        sa.Column("CustomPlan", sa.Text(), nullable=False),
        sa.Column("FinalPrice", sa.Numeric(10, 2), nullable=False),
        sa.Column("OriginalPrice", sa.Numeric(10, 2), nullable=False),
        sa.Column("DiscountCode", sa.String(length=64), nullable=True),
        sa.Column("DiscountAmount", sa.Numeric(10, 2), nullable=True),
        sa.Column("DiscountType", sa.String(length=16), nullable=True),
        sa.Column("PaymentID", sa.String(length=255), sa.ForeignKey("Payment.PaymentID"), nullable=True),
        sa.Column("PaymentProvider", sa.String(length=32), nullable=True),
        sa.Column("PaymentStatus", sa.String(length=32), nullable=True),
        sa.Column("RevenueCatTransactionID", sa.String(length=255), nullable=True),
        sa.Column("ShareCode", sa.String(length=32), nullable=False, unique=True),
        sa.Column("QrCodeUrl", sa.String(length=500), nullable=True),
        sa.Column("Status", sa.String(length=16), nullable=False),
        sa.Column("ExpiredAt", sa.DateTime(), nullable=True),
        sa.Column("GuestCount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("PhotoCount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("LastUpdated", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_Event_UserID", "Event", ["UserID"])
    op.create_index("ix_Event_RevenueCatTransactionID", "Event", ["RevenueCatTransactionID"])

    op.create_table(
        "Guest",
        sa.Column("GuestRecordID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("EventID", sa.String(length=36), sa.ForeignKey("Event.EventID"), nullable=False),
        sa.Column("GuestID", sa.String(length=128), nullable=False),
        sa.Column("Name", sa.String(length=200), nullable=True),
        sa.Column("TermsAccepted", sa.Boolean(), nullable=True),
        sa.Column("PhotosUploaded", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("IsAnonymous", sa.Boolean(), nullable=True),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("UpdatedAt", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("EventID", "GuestID", name="UQ_Guest_Event_Guest"),
    )
    op.create_index("ix_Guest_GuestID", "Guest", ["GuestID"])

    op.create_table(
        "Photo",
        sa.Column("PhotoID", sa.String(length=36), primary_key=True),
        sa.Column("EventID", sa.String(length=36), sa.ForeignKey("Event.EventID"), nullable=False),
        sa.Column("GuestID", sa.String(length=128), nullable=False),
        sa.Column("GuestName", sa.String(length=200), nullable=True),
        sa.Column("PhotoUrl", sa.String(length=500), nullable=False),
        sa.Column("StorageKey", sa.String(length=500), nullable=False),
        sa.Column("ContentType", sa.String(length=100), nullable=True),
        sa.Column("SizeBytes", sa.Integer(), nullable=True),
        sa.Column("Caption", sa.String(length=500), nullable=True),
        sa.Column("OverlayID", sa.String(length=36), nullable=True),
        sa.Column("IsAnonymous", sa.Boolean(), nullable=True),
        sa.Column("LikeCount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("UpdatedAt", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_Photo_GuestID", "Photo", ["GuestID"])
    op.create_index("IX_Photo_Event_Created", "Photo", ["EventID", "CreatedAt"])

    op.create_table(
        "PhotoLike",
        sa.Column("PhotoID", sa.String(length=36), sa.ForeignKey("Photo.PhotoID"), primary_key=True),
        sa.Column("GuestID", sa.String(length=128), primary_key=True),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "DiscountCode",
        sa.Column("DiscountCodeID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("Code", sa.String(length=64), nullable=False, unique=True),
        sa.Column("DiscountType", sa.String(length=16), nullable=False),
        sa.Column("DiscountValue", sa.Numeric(10, 2), nullable=False),
        sa.Column("StartDate", sa.DateTime(), nullable=False),
        sa.Column("ExpireDate", sa.DateTime(), nullable=False),
        sa.Column("IsActive", sa.Boolean(), nullable=True),
        sa.Column("CurrentUses", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("TotalDiscountGiven", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("UpdatedAt", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "DiscountCodeUsage",
        sa.Column("UsageID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "DiscountCodeID",
            sa.Integer(),
            sa.ForeignKey("DiscountCode.DiscountCodeID"),
            nullable=False,
        ),
        sa.Column("Code", sa.String(length=64), nullable=False),
        sa.Column("EventID", sa.String(length=36), nullable=False),
        sa.Column("UserID", sa.String(length=128), nullable=False),
        sa.Column("OrderAmount", sa.Numeric(10, 2), nullable=False),
        sa.Column("DiscountAmount", sa.Numeric(10, 2), nullable=False),
        sa.Column("UsedAt", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("DiscountCodeID", "EventID", name="UQ_DiscountCodeUsage_Code_Event"),
    )

    op.create_table(
        "AuditLog",
        sa.Column("AuditID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("Type", sa.String(length=32), nullable=False),
        sa.Column("Action", sa.String(length=255), nullable=False),
        sa.Column("Status", sa.String(length=16), nullable=False),
        sa.Column("UserID", sa.String(length=128), nullable=True),
        sa.Column("UserEmail", sa.String(length=255), nullable=True),
        sa.Column("EventID", sa.String(length=36), nullable=True),
        sa.Column("EventName", sa.String(length=255), nullable=True),
        sa.Column("Details", sa.Text(), nullable=True),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_AuditLog_UserID", "AuditLog", ["UserID"])
    op.create_index("ix_AuditLog_EventID", "AuditLog", ["EventID"])

    op.create_table(
        "AppErrorLog",
        sa.Column("ErrorID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("OccurredAt", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("RequestID", sa.String(length=64), nullable=True),
        sa.Column("Path", sa.String(length=500), nullable=True),
        sa.Column("Method", sa.String(length=16), nullable=True),
        sa.Column("StatusCode", sa.Integer(), nullable=True),
        sa.Column("ErrorCode", sa.String(length=64), nullable=True),
        sa.Column("UserID", sa.String(length=128), nullable=True),
        sa.Column("ClientIP", sa.String(length=45), nullable=True),
        sa.Column("UserAgent", sa.String(length=255), nullable=True),
        sa.Column("Message", sa.Text(), nullable=True),
        sa.Column("StackTrace", sa.Text(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("AppErrorLog")
    op.drop_index("ix_AuditLog_EventID", table_name="AuditLog")
    op.drop_index("ix_AuditLog_UserID", table_name="AuditLog")
    op.drop_table("AuditLog")
    op.drop_table("DiscountCodeUsage")
    op.drop_table("DiscountCode")
    op.drop_table("PhotoLike")
    op.drop_index("IX_Photo_Event_Created", table_name="Photo")
    op.drop_index("ix_Photo_GuestID", table_name="Photo")
    op.drop_table("Photo")
    op.drop_index("ix_Guest_GuestID", table_name="Guest")
    op.drop_table("Guest")
    op.drop_index("ix_Event_RevenueCatTransactionID", table_name="Event")
    op.drop_index("ix_Event_UserID", table_name="Event")
    op.drop_table("Event")
    op.drop_index("ix_PaymentLog_PaymentID", table_name="PaymentLog")
    op.drop_table("PaymentLog")
    op.drop_index("ix_Payment_UserID", table_name="Payment")
    op.drop_table("Payment")
    op.drop_index("ix_Overlay_OwnerUserID", table_name="Overlay")
    op.drop_table("Overlay")
    op.drop_table("PricingPlan")
    op.drop_table("Users")
