import uuid
from datetime import datetime
from src.models import db


class ReviewRequest(db.Model):
    __tablename__ = 'review_requests'
    
    # Request statuses after which follow-up outreach stops
    FINISHED_STATUSES = ('COMPLETED', 'CLICKED')
    
    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    customer_id = db.Column(db.String(36), db.ForeignKey('customers.id'), nullable=False, index=True)
    business_id = db.Column(db.String(36), db.ForeignKey('businesses.id'), nullable=True)
    delivery_method = db.Column(db.String(20), nullable=False, default='EMAIL')  # EMAIL, SMS
    status = db.Column(db.String(20), nullable=False, default='PENDING')
    # Status options: PENDING, SENT, DELIVERED, OPENED, CLICKED, COMPLETED, FAILED
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    
    customer = db.relationship('Customer', lazy=True)
    
    @property
    def is_finished(self):
        return self.status in self.FINISHED_STATUSES
    
    def to_dict(self):
        return {
            'id': str(self.id),
            'customer_id': str(self.customer_id),
            'business_id': str(self.business_id) if self.business_id else None,
            'delivery_method': self.delivery_method,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }
    
    def __repr__(self):
        return f'<ReviewRequest {self.id} ({self.status})>'
