import enum

class Role(str, enum.Enum):
    admin = "admin"
    manager = "manager"
    field = "field"

class OperationType(str, enum.Enum):
    reception = "reception"
    consumption = "consumption"
    return_ = "return"

class AlertType(str, enum.Enum):
    low_stock = "low_stock"
    out_of_stock = "out_of_stock"
    expiring = "expiring"

class AlertStatus(str, enum.Enum):
    inactive = "inactive"
    triggered = "triggered"
    acknowledged = "acknowledged"

class TransitionKind(str, enum.Enum):
    fire = "fire"
    clear = "clear"
    acknowledge = "acknowledge"

class MaterialStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    archived = "archived"


# Rôles autorisés à modifier les règles d'alerte / supprimer une opération
MANAGER_ROLES = {Role.admin, Role.manager}
