from app.models.automation import AutomationRule, AutomationTenantIndex
from app.models.tenant import MessagingCredential, TenantSession
