"""
订单通知事件。

OrderStateMachine 在事务提交后发送 order_status_changed；
这里的 receiver 把患者通知丢给 Celery，状态机本身不知道消息渠道。
"""

import logging

from django.dispatch import Signal, receiver

logger = logging.getLogger(__name__)

# kwargs: order_id, from_status, to_status, actor
order_status_changed = Signal()

# 这些状态变化需要通知患者
NOTIFY_ON = {
    'awaiting_payment',
    'preparing',
    'out_for_delivery',
    'delivered',
    'rejected',
}


@receiver(order_status_changed)
def enqueue_status_notification(sender, order_id, from_status, to_status, actor, **kwargs):
    if to_status not in NOTIFY_ON:
        return
    from rxorders.tasks import send_status_notification

    logger.info('[Notify] queue notification for order %s (%s -> %s)', order_id, from_status, to_status)
    send_status_notification.delay(order_id, to_status)
