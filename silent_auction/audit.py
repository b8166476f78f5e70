import json
from datetime import datetime


def _dump(values):
    if values is None:
        return None
    return json.dumps(values, default=str)


def log_audit(cursor, user_id, action, resource_type, resource_id, details=None, ip_address=None):
    cursor.execute('''INSERT INTO audit_logs (user_id, action, resource_type, resource_id, details, ip_address, created_at)
                      VALUES (%s, %s, %s, %s, %s, %s, %s)''',
                   (user_id, action, resource_type, resource_id, _dump(details), ip_address, datetime.now()))


def log_admin_action(cursor, admin_id, action, resource_type, resource_id, old_values=None, new_values=None,
                     reason=None):
    cursor.execute('''INSERT INTO admin_audit_logs (admin_id, action, resource_type, resource_id, old_values,
                        new_values, reason, created_at)
                      VALUES (%s, %s, %s, %s, %s, %s, %s, %s)''',
                   (admin_id, action, resource_type, resource_id, _dump(old_values), _dump(new_values), reason,
                    datetime.now()))
