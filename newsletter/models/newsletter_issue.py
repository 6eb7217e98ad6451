"""
Published newsletter issues.
"""
from sqlalchemy import Column, DateTime, String, Text

from newsletter.database import Base


class NewsletterIssue(Base):
    """An issue as it was published. Rows are never updated."""

    __tablename__ = "newsletter_issues"

    newsletter_issue_id = Column(String(36), primary_key=True)
    title = Column(Text, nullable=False)
    text_content = Column(Text, nullable=False)
    html_content = Column(Text, nullable=False)
    published_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self):
        return f"<NewsletterIssue(id={self.newsletter_issue_id}, title={self.title!r})>"
