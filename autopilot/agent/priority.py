"""
Deterministic priority assignment.

The model suggests a priority, but the stored priority always comes from
this table so the same kind of message is ranked the same way every time.

Usage:
    from autopilot.agent.priority import priority_for
    priority_for(Category.AUTHORIZATION_CODE)  # -> Priority.URGENT
"""

from typing import Optional

from autopilot.agent.schemas import Actionability, Category, Priority, Sentiment

CUSTOMER_CATEGORIES = {Category.CUSTOMER_INQUIRY, Category.CUSTOMER_COMPLAINT}

# Categories whose priority does not depend on sentiment or actionability
CATEGORY_PRIORITY: dict[Category, Priority] = {
    Category.AUTHORIZATION_CODE: Priority.URGENT,
    Category.SIGN_IN_CODE: Priority.URGENT,
    Category.SECURITY_ALERT: Priority.HIGH,
    Category.SALES_LEAD: Priority.HIGH,
    Category.CLIENT_SUPPORT: Priority.HIGH,
    Category.BILL: Priority.MEDIUM,
    Category.INVOICE: Priority.MEDIUM,
    Category.PAYMENT_CONFIRMATION: Priority.MEDIUM,
    Category.MEETING_REQUEST: Priority.MEDIUM,
    Category.INTERNAL: Priority.LOW,
    Category.NOTIFICATION: Priority.LOW,
    Category.MARKETING: Priority.NOISE,
    Category.JUNK_EMAIL: Priority.NOISE,
    Category.NEWSLETTER: Priority.NOISE,
    Category.PERSONAL: Priority.LOW,
    Category.SOCIAL: Priority.LOW,
}


def priority_for(
    category: Category,
    sentiment: Optional[Sentiment] = None,
    actionability: Optional[Actionability] = None,
) -> Priority:
    """
    Priority from (category, sentiment, actionability).

    Customer inquiries and complaints are urgent when the sender is urgent
    or is asking for something, otherwise high. Anything not in the table
    (including 'other') is medium.
    """
    if category in CUSTOMER_CATEGORIES:
        if sentiment == Sentiment.URGENT or actionability in (
            Actionability.REQUEST,
            Actionability.QUESTION,
        ):
            return Priority.URGENT
        return Priority.HIGH

    return CATEGORY_PRIORITY.get(category, Priority.MEDIUM)
