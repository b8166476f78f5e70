import json
import logging
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app, render_template

from silent_auction.extensions import socketio

logger = logging.getLogger(__name__)

IN_APP = 'IN_APP'
EMAIL = 'EMAIL'
MAX_DELIVERY_ATTEMPTS = 3

PREFERENCE_FIELDS = ('email_outbid', 'email_auction_ending', 'email_winner', 'email_auction_updates',
                     'in_app_enabled')
DEFAULT_PREFERENCES = {field: True for field in PREFERENCE_FIELDS}

# type -> (title, message format, link format, email preference, email template)
NOTIFICATION_TYPES = {
    'BID_OUTBID': ('You have been outbid',
                   'You have been outbid on {artwork_title}. The current bid is ${current_bid}.',
                   '/auction/{auction_id}', 'email_outbid', 'outbid'),
    'AUCTION_ENDING': ('Auction ending soon',
                       '{auction_title} ends at {ends_at}. Place your final bids!',
                       '/auction/{auction_id}', 'email_auction_ending', 'auction_ending'),
    'AUCTION_ENDED': ('Auction ended',
                      '{auction_title} has ended. Thank you for bidding!',
                      '/auction/{auction_id}', 'email_auction_updates', 'auction_ended'),
    'BID_ACCEPTED': ('You won!',
                     'Congratulations! You won {artwork_title} for ${amount}.',
                     '/dashboard', 'email_winner', 'winner'),
    'PAYMENT_RECEIPT': ('Payment received',
                        'We received your payment of ${total_amount} for {artwork_title}.',
                        '/dashboard', None, 'payment_receipt'),
    'AUCTION_APPROVED': ('Auction approved',
                         'Your auction {auction_title} has been approved.',
                         '/auction/{auction_id}', 'email_auction_updates', 'auction_approved'),
    'AUCTION_REJECTED': ('Auction needs changes',
                         'Your auction {auction_title} was returned for changes: {notes}',
                         '/auction/{auction_id}', 'email_auction_updates', 'auction_rejected'),
    'ARTWORK_APPROVED': ('Artwork approved',
                         '{artwork_title} has been approved for {auction_title}.',
                         '/auction/{auction_id}', 'email_auction_updates', 'artwork_approved'),
    'ARTWORK_REJECTED': ('Artwork not accepted',
                         '{artwork_title} was not accepted: {reason}',
                         '/dashboard', 'email_auction_updates', 'artwork_rejected'),
}


# --- Notification Helper ---
def create_notification(cursor, user_id, message, link, notification_type='GENERAL', title=None):
    """Creates an in-app notification using an existing database cursor. Does not commit."""
    created_at = datetime.now()
    cursor.execute('''INSERT INTO notifications (user_id, notification_type, channel, title, message, link,
                        delivery_status, created_at, sent_at)
                      VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)''',
                   (user_id, notification_type, IN_APP, title, message, link, 'SENT', created_at, created_at))

    # Build the notification object to send over SocketIO without another DB query
    notification_data = {
        'id': cursor.lastrowid,
        'user_id': user_id,
        'type': notification_type,
        'title': title,
        'message': message,
        'is_read': False,
        'created_at': created_at.isoformat(),
        'link': link
    }
    socketio.emit('new_notification', notification_data, room=str(user_id))
    return notification_data


def get_preferences(cursor, user_id):
    cursor.execute('SELECT * FROM notification_preferences WHERE user_id = %s', (user_id,))
    row = cursor.fetchone()
    if not row:
        prefs = dict(DEFAULT_PREFERENCES)
        prefs['unsubscribed'] = False
        return prefs
    prefs = {field: bool(row[field]) for field in PREFERENCE_FIELDS}
    prefs['unsubscribed'] = row.get('unsubscribed_at') is not None
    return prefs


def update_preferences(cursor, user_id, data):
    prefs = get_preferences(cursor, user_id)
    for field in PREFERENCE_FIELDS:
        if field in data:
            prefs[field] = bool(data[field])
    now = datetime.now()
    values = [prefs[field] for field in PREFERENCE_FIELDS]
    cursor.execute(f'''INSERT INTO notification_preferences (user_id, {', '.join(PREFERENCE_FIELDS)}, updated_at)
                       VALUES (%s, {', '.join(['%s'] * len(PREFERENCE_FIELDS))}, %s)
                       ON DUPLICATE KEY UPDATE
                       {', '.join(f'{field} = VALUES({field})' for field in PREFERENCE_FIELDS)},
                       unsubscribed_at = NULL, updated_at = VALUES(updated_at)''',
                   (user_id, *values, now))
    prefs['unsubscribed'] = False
    return prefs


def unsubscribe(cursor, user_id):
    now = datetime.now()
    cursor.execute('''INSERT INTO notification_preferences (user_id, email_outbid, email_auction_ending, email_winner,
                        email_auction_updates, unsubscribed_at, updated_at)
                      VALUES (%s, 0, 0, 0, 0, %s, %s)
                      ON DUPLICATE KEY UPDATE email_outbid = 0, email_auction_ending = 0, email_winner = 0,
                        email_auction_updates = 0, unsubscribed_at = VALUES(unsubscribed_at),
                        updated_at = VALUES(updated_at)''',
                   (user_id, now, now))


def render_notification(notification_type, context):
    title, message, link, _, _ = NOTIFICATION_TYPES[notification_type]
    return title, message.format(**context), link.format(**context)


def queue_notification(cursor, user_id, notification_type, context):
    """Records the in-app notification and queues an email, subject to the user's preferences."""
    title, message, link = render_notification(notification_type, context)
    email_pref = NOTIFICATION_TYPES[notification_type][3]
    prefs = get_preferences(cursor, user_id)

    queued = []
    if prefs['in_app_enabled']:
        create_notification(cursor, user_id, message, link, notification_type, title)
        queued.append(IN_APP)

    # Receipts go out regardless of marketing preferences.
    wants_email = email_pref is None or (prefs.get(email_pref) and not prefs['unsubscribed'])
    if wants_email:
        cursor.execute('''INSERT INTO notifications (user_id, notification_type, channel, title, message, link,
                            payload, delivery_status, attempts, created_at)
                          VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)''',
                       (user_id, notification_type, EMAIL, title, message, link,
                        json.dumps(context, default=str), 'PENDING', 0, datetime.now()))
        queued.append(EMAIL)
    return queued


def send_email(to_email, subject, html_body, text_body=None):
    """Send email via SMTP. Without SMTP_HOST the message is only logged."""
    config = current_app.config
    if not config.get('SMTP_HOST'):
        logger.info(f"Email (no SMTP configured) to {to_email}: {subject}")
        return True

    msg = MIMEMultipart('alternative')
    msg['Subject'] = subject
    msg['From'] = config['MAIL_FROM']
    msg['To'] = to_email
    if text_body:
        msg.attach(MIMEText(text_body, 'plain'))
    msg.attach(MIMEText(html_body, 'html'))

    try:
        with smtplib.SMTP(config['SMTP_HOST'], config['SMTP_PORT'], timeout=10) as server:
            if config.get('SMTP_USER') and config.get('SMTP_PASSWORD'):
                server.starttls()
                server.login(config['SMTP_USER'], config['SMTP_PASSWORD'])
            server.sendmail(config['MAIL_FROM'], [to_email], msg.as_string())
        logger.info(f"Email sent to {to_email}: {subject}")
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False


def render_email(template, context):
    context = dict(context, site_url=current_app.config['SITE_URL'])
    return render_template(f'email/{template}.html', **context)


def deliver_pending_emails(cursor, max_attempts=MAX_DELIVERY_ATTEMPTS, limit=50):
    """Sends queued and previously failed emails. Returns (sent, failed) counts."""
    cursor.execute('''SELECT n.id, n.notification_type, n.title, n.message, n.payload, n.attempts,
                             u.email, u.first_name
                      FROM notifications n JOIN users u ON n.user_id = u.id
                      WHERE n.channel = %s AND n.delivery_status IN ('PENDING', 'FAILED') AND n.attempts < %s
                      ORDER BY n.created_at ASC LIMIT %s''', (EMAIL, max_attempts, limit))
    rows = cursor.fetchall()
    sent = failed = 0
    for row in rows:
        context = json.loads(row['payload'] or '{}')
        context.setdefault('first_name', row['first_name'])
        template = NOTIFICATION_TYPES.get(row['notification_type'], (None,) * 5)[4]
        error = None
        try:
            html = render_email(template, context) if template else row['message']
            ok = send_email(row['email'], row['title'] or 'Silent Auction Gallery', html, row['message'])
        except Exception as e:
            logger.error(f"Could not render notification {row['id']}: {e}", exc_info=True)
            ok, error = False, str(e)

        if ok:
            sent += 1
            cursor.execute('''UPDATE notifications SET delivery_status = 'SENT', attempts = attempts + 1,
                                sent_at = %s, last_error = NULL WHERE id = %s''', (datetime.now(), row['id']))
        else:
            failed += 1
            cursor.execute('''UPDATE notifications SET delivery_status = 'FAILED', attempts = attempts + 1,
                                last_error = %s WHERE id = %s''', (error or 'SMTP delivery failed', row['id']))
    return sent, failed


def _serialize(notification):
    if isinstance(notification.get('created_at'), datetime):
        notification['created_at'] = notification['created_at'].isoformat()
    notification['is_read'] = bool(notification.get('is_read'))
    return notification


def get_summary(cursor, user_id):
    cursor.execute("SELECT COUNT(*) AS count FROM notifications WHERE user_id = %s AND channel = %s AND is_read = 0",
                   (user_id, IN_APP))
    unread_count = cursor.fetchone()['count']
    cursor.execute('''SELECT id, notification_type, title, message, link, is_read, created_at FROM notifications
                      WHERE user_id = %s AND channel = %s ORDER BY created_at DESC LIMIT 10''', (user_id, IN_APP))
    return unread_count, [_serialize(n) for n in cursor.fetchall()]


def list_notifications(cursor, user_id, limit, offset):
    cursor.execute("SELECT COUNT(*) AS count FROM notifications WHERE user_id = %s AND channel = %s",
                   (user_id, IN_APP))
    total = cursor.fetchone()['count']
    cursor.execute('''SELECT id, notification_type, title, message, link, is_read, created_at FROM notifications
                      WHERE user_id = %s AND channel = %s ORDER BY created_at DESC LIMIT %s OFFSET %s''',
                   (user_id, IN_APP, limit, offset))
    return total, [_serialize(n) for n in cursor.fetchall()]


def mark_read(cursor, user_id, notification_id=None):
    if notification_id is None:
        cursor.execute("UPDATE notifications SET is_read = 1 WHERE user_id = %s AND is_read = 0", (user_id,))
    else:
        cursor.execute("UPDATE notifications SET is_read = 1 WHERE user_id = %s AND id = %s",
                       (user_id, notification_id))
    return cursor.rowcount
