import uuid
from datetime import datetime
from src.models import db


class Customer(db.Model):
    """Customer of a business. The automation engine only reads these rows."""
    __tablename__ = 'customers'
    
    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = db.Column(db.String(36), db.ForeignKey('organizations.id'), nullable=False, index=True)
    business_id = db.Column(db.String(36), db.ForeignKey('businesses.id'), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(50), nullable=True)
    service_type = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    
    business = db.relationship('Business', lazy=True)
    
    @property
    def has_email(self):
        return bool(self.email and self.email.strip())
    
    @property
    def has_phone(self):
        return bool(self.phone and self.phone.strip())
    
    @property
    def first_name(self):
        if not self.name:
            return None
        return self.name.strip().split(' ')[0]
    
    def to_dict(self):
        return {
            'id': str(self.id),
            'organization_id': str(self.organization_id),
            'business_id': str(self.business_id) if self.business_id else None,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'service_type': self.service_type,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }
    
    def __repr__(self):
        return f'<Customer {self.name}>'
