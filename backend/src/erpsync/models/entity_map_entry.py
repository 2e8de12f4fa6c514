"""EntityMapEntry model - local <-> remote identity map"""

from sqlalchemy import Column, Integer, Text, DateTime, Index, UniqueConstraint

from .base import Base, utcnow


class EntityMapEntry(Base):
    """
    Entity Map Entry - links a local entity to its remote ERP record.

    The mapping is a bijection per (tenant_id, module, entity_type): at most
    one remote_id per local_id and vice versa, enforced by two unique
    constraints.

    Attributes:
        tenant_id: Isolation key
        module: Integration key
        entity_type: Entity type within the module
        local_id: Local entity id
        remote_id: Remote record id
        remote_model: Concrete remote schema name used (e.g. 'product.template')
        sync_hash: SHA-256 of the last-synced payload, used to skip no-op updates
        last_synced_at: Last successful sync of this pair
        last_polled_at: Last diff scan that saw the local entity
    """
    __tablename__ = "sync_entity_map"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, nullable=False, default=1)
    module = Column(Text, nullable=False)
    entity_type = Column(Text, nullable=False)
    local_id = Column(Integer, nullable=False)
    remote_id = Column(Integer, nullable=False)
    remote_model = Column(Text, nullable=False, default="")
    sync_hash = Column(Text, nullable=False, default="")
    last_synced_at = Column(DateTime, nullable=True, default=utcnow)
    last_polled_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            'tenant_id', 'module', 'entity_type', 'local_id',
            name='uq_sync_entity_map_local'
        ),
        UniqueConstraint(
            'tenant_id', 'module', 'entity_type', 'remote_id',
            name='uq_sync_entity_map_remote'
        ),
        Index('idx_sync_entity_map_polled', 'tenant_id', 'module', 'entity_type', 'last_polled_at'),
    )

    def __repr__(self):
        return (
            f"<EntityMapEntry(module='{self.module}', entity_type='{self.entity_type}', "
            f"local_id={self.local_id}, remote_id={self.remote_id})>"
        )
