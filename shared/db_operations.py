"""Database operations backing the relay's SQL storage backend."""

from typing import Dict, List, Optional
from sqlalchemy import create_engine, select, func, inspect, text
from sqlalchemy.orm import Session, sessionmaker

from shared.db_models import Base, COLLECTION_MODELS
from shared.config import get_database_url


class CollectionNotFoundError(LookupError):
    """Raised when a collection has no table in the database."""

    def __init__(self, collection: str):
        super().__init__(f"relation \"{collection}\" does not exist")
        self.collection = collection


def _column_map(model) -> Dict[str, str]:
    """Map document field names (database column names) to mapped attribute keys."""
    return {attr.columns[0].name: attr.key for attr in inspect(model).column_attrs}


class DatabaseOperations:
    """Handles all document operations for the portal collections."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or get_database_url()
        self.engine = create_engine(self.database_url, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_tables(self):
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    def ping(self) -> bool:
        """Check that the database answers a trivial query."""
        with self.engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True

    def has_collection(self, collection: str) -> bool:
        """Check whether a known collection has a table in the database."""
        if collection not in COLLECTION_MODELS:
            return False
        return inspect(self.engine).has_table(collection)

    def _model_for(self, collection: str):
        if not self.has_collection(collection):
            raise CollectionNotFoundError(collection)
        return COLLECTION_MODELS[collection]

    @staticmethod
    def _to_document(model, row) -> dict:
        return {name: getattr(row, key) for name, key in _column_map(model).items()}

    # Document Operations

    def find_documents(self, collection: str, document_id: Optional[str] = None) -> List[dict]:
        """
        Get documents from a collection, optionally filtered by id.

        Args:
            collection: Collection (table) name
            document_id: Optional id to match exactly

        Returns:
            List of documents keyed by column name

        Raises:
            CollectionNotFoundError: If the collection has no table
        """
        model = self._model_for(collection)
        with self.get_session() as session:
            stmt = select(model)
            if document_id is not None:
                stmt = stmt.where(model.id == document_id)
            result = session.execute(stmt)
            return [self._to_document(model, row) for row in result.scalars().all()]

    def upsert_document(self, collection: str, document: dict) -> str:
        """
        Insert a document or merge its fields into the existing row with the same id.

        Args:
            collection: Collection (table) name
            document: Document keyed by column name; must contain ``id``

        Returns:
            The id of the stored document

        Raises:
            ValueError: If the id is missing or the document has unknown fields
            CollectionNotFoundError: If the collection has no table
        """
        if not document.get('id'):
            raise ValueError("Upsert requires an 'id' field.")

        model = self._model_for(collection)
        columns = _column_map(model)
        unknown = sorted(set(document) - set(columns))
        if unknown:
            raise ValueError(f"Unknown column(s) for {collection}: {', '.join(unknown)}")

        with self.get_session() as session:
            row = session.get(model, document['id'])
            if row is None:
                row = model()
                session.add(row)

            for name, value in document.items():
                setattr(row, columns[name], value)

            session.commit()
            return document['id']

    def delete_document(self, collection: str, document_id: str) -> int:
        """
        Delete a document by id.

        Deleting an id that does not exist is not an error.

        Returns:
            Number of rows deleted (0 or 1)
        """
        model = self._model_for(collection)
        with self.get_session() as session:
            result = session.query(model).filter(model.id == document_id).delete()
            session.commit()
            return result

    def delete_all_documents(self, collection: str) -> int:
        """
        Delete every document in a collection.

        Returns:
            Number of rows deleted
        """
        model = self._model_for(collection)
        with self.get_session() as session:
            result = session.query(model).delete()
            session.commit()
            return result

    def collection_stats(self) -> List[dict]:
        """
        Report existence and row count for every known collection.

        Returns:
            List of dicts with name, exists and count
        """
        stats = []
        with self.get_session() as session:
            for name, model in COLLECTION_MODELS.items():
                if not inspect(self.engine).has_table(name):
                    stats.append({'name': name, 'exists': False, 'count': 0})
                    continue
                count = session.execute(select(func.count()).select_from(model)).scalar()
                stats.append({'name': name, 'exists': True, 'count': count or 0})
        return stats
