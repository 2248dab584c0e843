"""
Provenance tracking for pipeline runs.

This module provides W3C-PROV-like provenance tracking so every stage of a
run can be traced back to its parameters, inputs and software versions.
"""

import datetime
import hashlib
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import anndata

from cellpipe.utils.system import get_package_versions

logger = logging.getLogger(__name__)

# anndata.uns cannot hold lists of heterogeneous dicts, so the record is
# stored as a JSON document under this key
UNS_KEY = "provenance"


class ProvenanceTracker:
    """
    W3C-PROV-like provenance tracking system.

    Activities are appended in execution order, one per executed stage plus
    the loading and saving boundaries. Entities describe the files and
    in-memory datasets the activities consume and produce.
    """

    def __init__(self, namespace: str = "cellpipe"):
        """
        Initialize the provenance tracker.

        Args:
            namespace: Namespace for provenance identifiers
        """
        self.namespace = namespace
        self.activities: List[Dict[str, Any]] = []
        self.entities: Dict[str, Dict[str, Any]] = {}
        self.agents: Dict[str, Dict[str, Any]] = {}
        self.logger = logger
        self._software_versions: Optional[Dict[str, str]] = None

    def create_activity(
        self,
        activity_type: str,
        agent: str,
        inputs: Optional[List[Dict[str, Any]]] = None,
        outputs: Optional[List[Dict[str, Any]]] = None,
        parameters: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> str:
        """
        Create a new provenance activity record.

        Args:
            activity_type: Type of activity (e.g., 'data_loading', 'normalize')
            agent: Agent performing the activity
            inputs: List of input entity references
            outputs: List of output entity references
            parameters: Parameters used in the activity
            description: Human-readable description

        Returns:
            str: Unique activity ID
        """
        activity_id = f"{self.namespace}:activity:{uuid.uuid4()}"
        timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()

        activity = {
            "id": activity_id,
            "type": activity_type,
            "agent": agent,
            "timestamp": timestamp,
            "inputs": inputs or [],
            "outputs": outputs or [],
            "parameters": parameters or {},
            "description": description,
            "software_versions": self._get_software_versions(),
        }

        self.activities.append(activity)
        self.logger.debug(f"Created activity: {activity_id} ({activity_type})")

        return activity_id

    def create_entity(
        self,
        entity_type: str,
        uri: Union[str, Path] = None,
        checksum: Optional[str] = None,
        format: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Create a new provenance entity record.

        Args:
            entity_type: Type of entity (e.g., 'dataset', 'source_file')
            uri: URI or path to the entity
            checksum: Optional checksum for integrity verification
            format: File format or data type
            metadata: Additional metadata

        Returns:
            str: Unique entity ID
        """
        entity_id = f"{self.namespace}:entity:{uuid.uuid4()}"

        if checksum is None and isinstance(uri, (str, Path)):
            checksum = self._calculate_checksum(uri)

        entity = {
            "id": entity_id,
            "type": entity_type,
            "uri": str(uri) if uri else None,
            "checksum": checksum,
            "format": format,
            "metadata": metadata or {},
            "created": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }

        self.entities[entity_id] = entity
        self.logger.debug(f"Created entity: {entity_id} ({entity_type})")

        return entity_id

    def create_agent(
        self,
        name: str,
        agent_type: str = "software",
        version: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str:
        """Create (or reuse) an agent record and return its ID."""
        agent_id = f"{self.namespace}:agent:{name.replace(' ', '_').lower()}"

        if agent_id not in self.agents:
            self.agents[agent_id] = {
                "id": agent_id,
                "name": name,
                "type": agent_type,
                "version": version,
                "description": description,
            }
            self.logger.debug(f"Created agent: {agent_id}")

        return agent_id

    def log_data_loading(
        self,
        source: Union[str, Path],
        loader_name: str,
        parameters: Optional[Dict[str, Any]] = None,
        shape: Optional[tuple] = None,
    ) -> str:
        """
        Log the loading of the input matrix.

        Args:
            source: URL or local path the matrix was read from
            loader_name: Name of the loader
            parameters: Loading parameters
            shape: (n_observations, n_features) of the loaded dataset

        Returns:
            str: Activity ID
        """
        is_remote = str(source).startswith(("http://", "https://"))
        input_entity_id = self.create_entity(
            entity_type="source",
            uri=str(source),
            checksum="" if is_remote else None,
            format=self._detect_format(source),
        )
        output_entity_id = self.create_entity(
            entity_type="dataset",
            metadata={"shape": list(shape) if shape else None},
        )
        agent_id = self.create_agent(
            name=loader_name, description="Loader for 10x sparse matrices"
        )

        return self.create_activity(
            activity_type="data_loading",
            agent=agent_id,
            inputs=[{"entity": input_entity_id, "role": "source"}],
            outputs=[{"entity": output_entity_id, "role": "loaded_data"}],
            parameters=parameters,
            description=f"Loaded data from {source} using {loader_name}",
        )

    def log_stage(
        self,
        stage_name: str,
        agent_name: str,
        parameters: Optional[Dict[str, Any]] = None,
        shape: Optional[tuple] = None,
        description: Optional[str] = None,
    ) -> str:
        """
        Log one executed pipeline stage.

        The output dataset entity of the previous activity becomes the input
        of this one, which keeps ``get_lineage`` linear.

        Args:
            stage_name: Name of the stage (used as activity type)
            agent_name: Service that performed the work
            parameters: Effective parameters of the stage
            shape: Dataset shape after the stage
            description: Human-readable description

        Returns:
            str: Activity ID
        """
        inputs = []
        previous = self._last_dataset_entity()
        if previous is not None:
            inputs.append({"entity": previous, "role": "input_data"})

        output_entity_id = self.create_entity(
            entity_type="dataset",
            metadata={"shape": list(shape) if shape else None, "stage": stage_name},
        )
        agent_id = self.create_agent(name=agent_name, description="Pipeline service")

        return self.create_activity(
            activity_type=stage_name,
            agent=agent_id,
            inputs=inputs,
            outputs=[{"entity": output_entity_id, "role": "processed_data"}],
            parameters=parameters,
            description=description or f"Applied {stage_name} to data",
        )

    def log_data_saving(
        self,
        output_path: Union[str, Path],
        backend_name: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Log the snapshot write; returns the activity ID."""
        inputs = []
        previous = self._last_dataset_entity()
        if previous is not None:
            inputs.append({"entity": previous, "role": "data_to_save"})

        output_entity_id = self.create_entity(
            entity_type="saved_file",
            uri=output_path,
            format=self._detect_format(output_path),
        )
        agent_id = self.create_agent(
            name=backend_name, description="Data storage backend"
        )

        return self.create_activity(
            activity_type="data_saving",
            agent=agent_id,
            inputs=inputs,
            outputs=[{"entity": output_entity_id, "role": "saved_file"}],
            parameters=parameters,
            description=f"Saved data to {output_path} using {backend_name}",
        )

    def discard_activity(self, activity_id: str) -> bool:
        """Remove an activity and the entities only it produced; False if unknown."""
        for index, activity in enumerate(self.activities):
            if activity["id"] == activity_id:
                break
        else:
            return False

        del self.activities[index]
        for output in activity["outputs"]:
            self.entities.pop(output.get("entity"), None)
        self.logger.debug(f"Discarded activity: {activity_id} ({activity['type']})")
        return True

    def activities_of_type(self, activity_type: str) -> List[Dict[str, Any]]:
        return [a for a in self.activities if a["type"] == activity_type]

    def get_lineage(self, entity_id: str) -> List[Dict[str, Any]]:
        """
        Get the complete lineage of an entity.

        Args:
            entity_id: ID of the entity to trace

        Returns:
            List[Dict[str, Any]]: Activities in the lineage, newest first
        """
        lineage = []

        for activity in self.activities:
            for output in activity.get("outputs", []):
                if output.get("entity") == entity_id:
                    lineage.append(activity)
                    for input_ref in activity.get("inputs", []):
                        input_entity_id = input_ref.get("entity")
                        if input_entity_id:
                            lineage.extend(self.get_lineage(input_entity_id))
                    break

        return lineage

    def add_to_anndata(self, adata: anndata.AnnData) -> anndata.AnnData:
        """Store the provenance record in ``adata.uns`` as a JSON string."""
        adata.uns[UNS_KEY] = json.dumps(self.to_dict(), default=str)
        return adata

    def extract_from_anndata(self, adata: anndata.AnnData) -> bool:
        """
        Extract provenance information from an AnnData object.

        Args:
            adata: AnnData object containing provenance

        Returns:
            bool: True if provenance was found and extracted
        """
        if UNS_KEY not in adata.uns:
            return False

        prov_data = adata.uns[UNS_KEY]
        if isinstance(prov_data, str):
            prov_data = json.loads(prov_data)

        self.activities.extend(prov_data.get("activities", []))
        self.entities.update(prov_data.get("entities", {}))
        self.agents.update(prov_data.get("agents", {}))

        return True

    def to_dict(self) -> Dict[str, Any]:
        """
        Export provenance data as dictionary.

        Returns:
            Dict[str, Any]: Complete provenance data
        """
        return {
            "namespace": self.namespace,
            "activities": self.activities,
            "entities": self.entities,
            "agents": self.agents,
            "export_timestamp": datetime.datetime.now(
                datetime.timezone.utc
            ).isoformat(),
        }

    def from_dict(self, data: Dict[str, Any]) -> None:
        """
        Import provenance data from dictionary.

        Args:
            data: Provenance data dictionary
        """
        self.namespace = data.get("namespace", self.namespace)
        self.activities = data.get("activities", [])
        self.entities = data.get("entities", {})
        self.agents = data.get("agents", {})

    def _last_dataset_entity(self) -> Optional[str]:
        for activity in reversed(self.activities):
            for output in activity.get("outputs", []):
                entity = self.entities.get(output.get("entity"))
                if entity and entity["type"] == "dataset":
                    return entity["id"]
        return None

    def _calculate_checksum(self, path: Union[str, Path]) -> Optional[str]:
        """Calculate SHA256 checksum of a file."""
        path = Path(path)
        if not path.is_file():
            return None

        sha256_hash = hashlib.sha256()
        try:
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(4096), b""):
                    sha256_hash.update(chunk)
        except OSError as e:
            self.logger.warning(f"Failed to calculate checksum for {path}: {e}")
            return None

        return sha256_hash.hexdigest()

    def _detect_format(self, path: Union[str, Path]) -> str:
        """Detect file format from extension."""
        name = str(path).lower()

        format_mapping = {
            ".h5ad": "h5ad",
            ".tar.gz": "tar.gz",
            ".tgz": "tar.gz",
            ".mtx.gz": "mtx",
            ".mtx": "mtx",
            ".csv": "csv",
            ".json": "json",
        }
        for extension, fmt in format_mapping.items():
            if name.endswith(extension):
                return fmt

        return "10x_directory" if Path(path).suffix == "" else "unknown"

    def _get_software_versions(self) -> Dict[str, str]:
        if self._software_versions is None:
            self._software_versions = get_package_versions()
        return dict(self._software_versions)
