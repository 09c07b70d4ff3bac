import uuid
from datetime import datetime, timezone
from sqlalchemy import create_engine, Column, Integer, String, ForeignKey, DateTime, Text, Boolean
from sqlalchemy.orm import sessionmaker, declarative_base, relationship
from core.config import Config

engine = create_engine(Config.DATABASE_URL, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
Base = declarative_base()

def utcnow():
    # naive UTC, comparable with values read back from sqlite
    return datetime.now(timezone.utc).replace(tzinfo=None)

def new_id():
    return uuid.uuid4().hex

class TokenBundleMixin:
    whop_access_token = Column(Text, nullable=True)
    whop_refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    whop_product_id = Column(String(191), nullable=True)

class Company(TokenBundleMixin, Base):
    __tablename__ = "companies"
    id = Column(String(32), primary_key=True, default=new_id)
    whop_company_id = Column(String(191), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    installed_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    users = relationship("User", back_populates="company")

class User(TokenBundleMixin, Base):
    __tablename__ = "users"
    id = Column(String(32), primary_key=True, default=new_id)
    whop_user_id = Column(String(191), unique=True, nullable=False)
    role = Column(String(16), default="buyer", nullable=False)
    company_id = Column(String(32), ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    company = relationship("Company", back_populates="users")

class Product(Base):
    __tablename__ = "products"
    id = Column(String(32), primary_key=True, default=new_id)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price_cents = Column(Integer, nullable=False)
    currency = Column(String(8), default="USD", nullable=False)
    file_key = Column(String(512), nullable=False)
    image_key = Column(String(512), nullable=True)
    image_url = Column(String(1024), nullable=True)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=True)
    company_id = Column(String(32), ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    plan_id = Column(String(191), nullable=True)
    checkout_configuration_id = Column(String(191), nullable=True)
    purchase_url = Column(String(1024), nullable=True)
    provisioning_token = Column(String(32), nullable=True)
    provisioning_started_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    user = relationship("User")
    company = relationship("Company")

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priceCents": self.price_cents,
            "currency": self.currency,
            "fileKey": self.file_key,
            "imageKey": self.image_key,
            "imageUrl": self.image_url,
            "userId": self.user_id,
            "companyId": self.company_id,
            "planId": self.plan_id,
            "checkoutConfigurationId": self.checkout_configuration_id,
            "purchaseUrl": self.purchase_url,
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

class Purchase(Base):
    __tablename__ = "purchases"
    id = Column(String(32), primary_key=True, default=new_id)
    product_id = Column(String(32), ForeignKey("products.id"), nullable=False)
    buyer_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    whop_payment_id = Column(String(191), unique=True, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    status = Column(String(16), default="paid", nullable=False)
    downloads = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    product = relationship("Product")
    buyer = relationship("User")

class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    id = Column(Integer, primary_key=True)
    event_id = Column(String(255), unique=True, nullable=False)
    event_type = Column(String(255), nullable=False)
    payload = Column(Text, nullable=False)
    status = Column(String(16), default="pending", nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    received_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

def init_db():
    Base.metadata.create_all(bind=engine)
