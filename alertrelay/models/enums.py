"""
Enumerations shared by models, schemas and services.
"""
import enum


class TriggerType(str, enum.Enum):
    """Domain event kinds a notification rule can react to."""
    BACKUP_FAILED = "backup_failed"
    BACKUP_SUCCESS = "backup_success"
    AGENT_OFFLINE = "agent_offline"
    AGENT_HEALTH_WARNING = "agent_health_warning"
    AGENT_HEALTH_CRITICAL = "agent_health_critical"
    STORAGE_USAGE_HIGH = "storage_usage_high"
    REPLICATION_LAG = "replication_lag"
    RANSOMWARE_SUSPECTED = "ransomware_suspected"
    MAINTENANCE_SCHEDULED = "maintenance_scheduled"
    SLA_BREACH = "sla_breach"


class DeliveryStatus(str, enum.Enum):
    """Webhook delivery state machine."""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRYING = "retrying"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.DELIVERED, DeliveryStatus.FAILED)


class ChannelType(str, enum.Enum):
    """Notification channel integrations."""
    SLACK = "slack"
    WEBHOOK = "webhook"
    PAGERDUTY = "pagerduty"
