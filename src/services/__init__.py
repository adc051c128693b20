"""
Business services

Import services from their modules directly:
    from src.services.metering import HeartbeatProcessor, DeltaTracker, QuotaLedger
    from src.services.settlement_service import SettlementCoordinator
    from src.services.payment_service import PaymentService
    from src.services.node_service import NodeService
"""
