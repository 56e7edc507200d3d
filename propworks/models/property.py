"""
Property Works — Intervention Workflow Engine
Property domain models.

Models:
    - Building:         a managed building owned by a team
    - Lot:              a unit inside a building
    - PropertyManager:  manager responsible for a building or a single lot

Only the parts the workflow engine reads are modelled here; building and lot
CRUD lives elsewhere.
"""

from propworks.models import db


class Building(db.Model):
    __tablename__ = "buildings"

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)

    lots = db.relationship("Lot", backref="building", lazy="select")

    def __repr__(self):
        return f"<Building {self.id}: {self.name}>"


class Lot(db.Model):
    __tablename__ = "lots"

    id = db.Column(db.Integer, primary_key=True)
    building_id = db.Column(
        db.Integer, db.ForeignKey("buildings.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    reference = db.Column(db.String(100), nullable=False)

    def __repr__(self):
        return f"<Lot {self.id}: {self.reference}>"


class PropertyManager(db.Model):
    """
    Manager of a building or of one lot.

    Exactly one of ``building_id`` / ``lot_id`` is expected to be set.
    """

    __tablename__ = "property_managers"
    __table_args__ = (
        db.Index("idx_property_manager_building", "building_id"),
        db.Index("idx_property_manager_lot", "lot_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    building_id = db.Column(db.Integer, db.ForeignKey("buildings.id", ondelete="CASCADE"), nullable=True)
    lot_id = db.Column(db.Integer, db.ForeignKey("lots.id", ondelete="CASCADE"), nullable=True)

    def __repr__(self):
        return f"<PropertyManager user={self.user_id} building={self.building_id} lot={self.lot_id}>"
