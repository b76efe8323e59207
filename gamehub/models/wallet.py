from sqlalchemy import Column, String, DECIMAL, ForeignKey, TIMESTAMP, func, Integer, Index, UniqueConstraint
from gamehub.database import Base

# 원장 <-> 제공사 지갑 이동 유형
ENTRY_DEPOSIT = "deposit"
ENTRY_WITHDRAW = "withdraw"
ENTRY_ROLLBACK = "rollback"

class LedgerEntry(Base):
    """세션 단위 원장 이동 기록 (실머니 입출금과는 별개)"""
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    session_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(50), ForeignKey("players.id"), nullable=False, index=True)
    api_tag = Column(String(30), nullable=False)
    entry_type = Column(String(10), nullable=False)  # 'deposit', 'withdraw', 'rollback'
    amount = Column(DECIMAL(12, 2), nullable=False)
    balance_before = Column(DECIMAL(12, 2), nullable=True)
    balance_after = Column(DECIMAL(12, 2), nullable=True)
    created_at = Column(TIMESTAMP, server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        # 세션당 유형별 이동은 한 번만 (중복 입금/출금 방지 키)
        UniqueConstraint('session_id', 'entry_type', name='uq_ledger_entries_session_type'),
        Index('ix_ledger_entries_user_date', user_id, created_at.desc()),
    )
