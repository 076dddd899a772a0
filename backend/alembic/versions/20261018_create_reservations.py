from alembic import op
import sqlalchemy as sa


revision = "20261018_create_reservations"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "wishlists",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_wishlists_owner_id", "wishlists", ["owner_id"])
    op.create_index("ix_wishlists_slug", "wishlists", ["slug"], unique=True)

    op.create_table(
        "gift_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "wishlist_id",
            sa.Integer(),
            sa.ForeignKey("wishlists.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.String(length=2000), nullable=True),
        sa.Column("link", sa.String(length=2048), nullable=True),
        sa.Column("image_url", sa.String(length=2048), nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=True),
        sa.Column("purchased_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("purchased_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_gift_items_wishlist_id", "gift_items", ["wishlist_id"])
    op.create_index("ix_gift_items_owner_id", "gift_items", ["owner_id"])

    op.create_table(
        "reservations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "wishlist_id",
            sa.Integer(),
            sa.ForeignKey("wishlists.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "gift_item_id",
            sa.Integer(),
            sa.ForeignKey("gift_items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "reserved_by_user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("guest_name", sa.Text(), nullable=True),
        sa.Column("encrypted_guest_name", sa.Text(), nullable=True),
        sa.Column("guest_email", sa.Text(), nullable=True),
        sa.Column("encrypted_guest_email", sa.Text(), nullable=True),
        sa.Column("reservation_token", sa.String(length=36), nullable=True, unique=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("reserved_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("notification_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('active', 'cancelled', 'fulfilled', 'expired')",
            name="ck_reservations_status",
        ),
        sa.CheckConstraint(
            "NOT (reserved_by_user_id IS NOT NULL AND reservation_token IS NOT NULL)",
            name="ck_reservations_single_reserver_kind",
        ),
        sa.CheckConstraint(
            "NOT (reserved_by_user_id IS NOT NULL AND "
            "(guest_email IS NOT NULL OR encrypted_guest_email IS NOT NULL))",
            name="ck_reservations_user_or_guest_contact",
        ),
    )
    op.create_index("ix_reservations_wishlist_id", "reservations", ["wishlist_id"])
    op.create_index("ix_reservations_gift_item_id", "reservations", ["gift_item_id"])
    op.create_index("ix_reservations_reserved_by_user_id", "reservations", ["reserved_by_user_id"])
    op.create_index("ix_reservations_status", "reservations", ["status"])
    op.create_index(
        "ux_reservations_active_gift_item",
        "reservations",
        ["gift_item_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )
    op.create_index(
        "ix_reservations_guest_expiry",
        "reservations",
        ["expires_at"],
        postgresql_where=sa.text("status = 'active' AND reservation_token IS NOT NULL"),
    )


def downgrade() -> None:
    op.drop_index("ix_reservations_guest_expiry", table_name="reservations")
    op.drop_index("ux_reservations_active_gift_item", table_name="reservations")
    op.drop_table("reservations")
    op.drop_table("gift_items")
    op.drop_table("wishlists")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_id", table_name="users")
    op.drop_table("users")
