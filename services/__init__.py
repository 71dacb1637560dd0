"""
Сервисы: подписки, платежи, уведомления, шифрование.

Импортируйте модули напрямую (services.subscription_service и т.д.),
пакет ничего не реэкспортирует, чтобы не тянуть vpn ядро при импорте.
"""
