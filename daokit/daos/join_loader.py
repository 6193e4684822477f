"""
Join-Entity Loader
==================

Attaches related entities to root entities without issuing one query per
root.

For one :class:`JoinSpec` the loader collects the join keys of every root,
runs a single ``IN (...)`` query against the related DAO (an OR of ANDs for
composite keys, split into chunks of ``JOIN_BATCH_SIZE`` keys), partitions
the rows by key and sets the relation property on each root in place.

A join declared ``through`` a middle entity (many-to-many) costs two
queries per key chunk: one on the middle table for the links of the roots,
one on the related table for the linked keys.

Cardinality
-----------
- ``ONE``: the first matching row in query order, or ``None``
- ``MANY_LIST``: a list of every match, in query order
- ``MANY_SET``: a set of every match (related entities must be hashable)

A ``ONE`` join whose related keys are not exactly the related entity's ID
columns must declare an ``order_by``; otherwise "first match" would depend on
whatever order the database happens to return.

Usage
-----
.. code-block:: python

    devices = JoinSpec(
        root_property="devices",
        root_key_properties=("id",),
        related_type=Device,
        related_key_properties=("userId",),
        cardinality=Cardinality.MANY_LIST,
    )
    groups = JoinSpec(
        "groups", "id", Group, "id",
        through=Membership, through_root_keys="userId", through_related_keys="groupId",
    )
    users = user_dao.list(eq("lastName", "Doe"))
    loader.load(users, devices)
    loader.load(users, groups)
"""

import logging
from collections.abc import Iterable as IterableABC, Mapping as MappingABC, Sized
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from daokit.core.conditions import OrderBy, and_, criteria, eq, in_, or_, order_by
from daokit.core.errors import DescriptorNotFoundError, JoinConfigurationError
from daokit.entities.descriptor import EntityDescriptor

if TYPE_CHECKING:
    from daokit.daos.dao_engine import DaoEngine
    from daokit.helpers.transactionManagement import TransactionContext

logger = logging.getLogger(__name__)

Key = Tuple[Any, ...]


class Cardinality(str, Enum):
    ONE = "ONE"
    MANY_LIST = "MANY_LIST"
    MANY_SET = "MANY_SET"


def _names(value: Any) -> Tuple[str, ...]:
    return (value,) if isinstance(value, str) else tuple(value)


@dataclass(frozen=True)
class JoinSpec:
    """
    Declaration of one relation.

    Attributes
    ----------
    root_property : str
        Attribute of the root entity that receives the related entities.
    root_key_properties : tuple of str
        Root-side join key properties.
    related_type : type
        Entity type of the related side.
    related_key_properties : tuple of str
        Related-side join key properties, paired by position with the root
        keys (or, for a ``through`` join, with ``through_related_keys``).
    cardinality : Cardinality
    order_by : OrderBy, optional
        Ordering of the secondary query.
    through : type, optional
        Middle entity of a many-to-many join.
    through_root_keys : tuple of str
        Middle-entity properties holding the root keys.
    through_related_keys : tuple of str
        Middle-entity properties holding the related keys.
    """

    root_property: str
    root_key_properties: Tuple[str, ...]
    related_type: type
    related_key_properties: Tuple[str, ...]
    cardinality: Cardinality = Cardinality.MANY_LIST
    order_by: Optional[OrderBy] = None
    through: Optional[type] = None
    through_root_keys: Tuple[str, ...] = ()
    through_related_keys: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for name in ("root_key_properties", "related_key_properties", "through_root_keys", "through_related_keys"):
            object.__setattr__(self, name, _names(getattr(self, name)))
        try:
            object.__setattr__(self, "cardinality", Cardinality(self.cardinality))
        except ValueError:
            raise JoinConfigurationError(f"Unknown cardinality {self.cardinality!r}", operation="join") from None
        if isinstance(self.order_by, (str, tuple, list)):
            items = (self.order_by,) if isinstance(self.order_by, str) else self.order_by
            object.__setattr__(self, "order_by", order_by(*items))
        if not self.root_key_properties:
            raise JoinConfigurationError(f"Join '{self.root_property}' declares no key properties", operation="join")
        if self.through is None:
            if self.through_root_keys or self.through_related_keys:
                raise JoinConfigurationError(
                    f"Join '{self.root_property}' names middle keys but no middle entity", operation="join"
                )
            pairs = ((self.root_key_properties, self.related_key_properties),)
        else:
            pairs = (
                (self.root_key_properties, self.through_root_keys),
                (self.related_key_properties, self.through_related_keys),
            )
        for left, right in pairs:
            if len(left) != len(right):
                raise JoinConfigurationError(
                    f"Join '{self.root_property}' pairs {len(left)} key(s) with {len(right)} key(s)",
                    operation="join",
                )

    def validate(
        self, root: EntityDescriptor, related: EntityDescriptor, through: Optional[EntityDescriptor] = None
    ) -> None:
        """Check the spec against the descriptors; raises :class:`JoinConfigurationError`."""
        checks = [(root, self.root_key_properties), (related, self.related_key_properties)]
        if through is not None:
            checks += [(through, self.through_root_keys), (through, self.through_related_keys)]
        for descriptor, props in checks:
            for prop in props:
                if not descriptor.has_property(prop):
                    raise JoinConfigurationError(
                        f"Join '{self.root_property}': no key property '{prop}' in entity '{descriptor.name}'",
                        operation="join",
                    )
        if root.has_property(self.root_property):
            raise JoinConfigurationError(
                f"Join target '{self.root_property}' is a mapped column of '{root.name}'", operation="join"
            )
        if self.order_by is not None:
            for prop in self.order_by.properties:
                if not related.has_property(prop):
                    raise JoinConfigurationError(
                        f"Join '{self.root_property}': cannot order by unknown property '{prop}'", operation="join"
                    )
        unique_key = self.through is None and set(self.related_key_properties) == set(related.id_property_names)
        if self.cardinality is Cardinality.ONE and self.order_by is None and not unique_key:
            raise JoinConfigurationError(
                f"Join '{self.root_property}' has cardinality ONE on a non-unique key and needs an order_by",
                operation="join",
            )


def _is_filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, Sized) and not isinstance(value, (str, bytes)):
        return len(value) > 0
    return True


def _key_condition(props: Sequence[str], keys: Sequence[Key]):
    if len(props) == 1:
        return in_(props[0], [k[0] for k in keys])
    return or_(*[and_(*[eq(p, v) for p, v in zip(props, key)]) for key in keys])


class JoinLoader:
    """
    Resolves :class:`JoinSpec` relations through the DAOs of a :class:`DaoEngine`.

    Parameters
    ----------
    engine : DaoEngine
        Supplies the related DAOs and their descriptors.
    batch_size : int, optional
        Maximum keys per secondary query; defaults to ``JOIN_BATCH_SIZE``.
    """

    def __init__(self, engine: "DaoEngine", batch_size: Optional[int] = None) -> None:
        self.engine = engine
        self.batch_size = batch_size or engine.settings.JOIN_BATCH_SIZE

    def _dao(self, entity_type: type, spec: JoinSpec):
        try:
            return self.engine.dao_for(entity_type)
        except DescriptorNotFoundError as e:
            raise JoinConfigurationError(
                f"Join '{spec.root_property}' targets unregistered entity "
                f"'{getattr(entity_type, '__name__', entity_type)}'",
                operation="join",
            ) from e

    def _roots(self, roots: Any) -> Tuple[Any, List[Any]]:
        """Return ``(value to hand back, list of root entities)``."""
        if (
            type(roots) in self.engine.registry
            or isinstance(roots, (str, bytes, MappingABC))
            or not isinstance(roots, IterableABC)
        ):
            return roots, [roots]
        if isinstance(roots, (list, tuple)):
            return roots, list(roots)
        items = list(roots)
        return items, items

    def _prepare(self, roots: Any, spec: JoinSpec, root_descriptor: Optional[EntityDescriptor]):
        result, items = self._roots(roots)
        related_dao = self._dao(spec.related_type, spec)
        through_dao = self._dao(spec.through, spec) if spec.through is not None else None
        if items:
            root_descriptor = root_descriptor or self.engine.registry.get(type(items[0]))
            spec.validate(
                root_descriptor, related_dao.descriptor, through_dao.descriptor if through_dao is not None else None
            )
        return result, items, root_descriptor, related_dao, through_dao

    def _chunks(self, keys: Sequence[Key]) -> Iterable[Sequence[Key]]:
        for start in range(0, len(keys), self.batch_size):
            yield keys[start:start + self.batch_size]

    def _links(self, spec: JoinSpec, through_dao, root_keys: Sequence[Key], tx) -> Dict[Key, List[Key]]:
        """Related keys linked to each root key by the middle entity."""
        through = through_dao.descriptor
        links: Dict[Key, List[Key]] = {}
        for chunk in self._chunks(root_keys):
            for link in through_dao.list(_key_condition(spec.through_root_keys, chunk), tx=tx):
                root_key = tuple(through.value_of(link, p) for p in spec.through_root_keys)
                related_key = tuple(through.value_of(link, p) for p in spec.through_related_keys)
                if None not in related_key:
                    links.setdefault(root_key, []).append(related_key)
        return links

    def _related(self, spec: JoinSpec, related_dao, keys: Sequence[Key], tx) -> Dict[Key, List[Any]]:
        """Related entities grouped by their key, in query order."""
        related = related_dao.descriptor
        matches: Dict[Key, List[Any]] = {}
        for chunk in self._chunks(keys):
            condition = criteria(_key_condition(spec.related_key_properties, chunk), spec.order_by)
            for entity in related_dao.list(condition, tx=tx):
                key = tuple(related.value_of(entity, p) for p in spec.related_key_properties)
                matches.setdefault(key, []).append(entity)
        return matches

    def load(
        self,
        roots: Union[Any, Iterable[Any]],
        spec: JoinSpec,
        only_if_null: bool = False,
        root_descriptor: Optional[EntityDescriptor] = None,
        tx: Optional["TransactionContext"] = None,
    ) -> Union[Any, Sequence[Any]]:
        """
        Load ``spec`` for one root or an iterable of roots.

        Parameters
        ----------
        roots : entity | iterable of entities
            Mutated in place. A single entity, list or tuple is returned
            as given; any other iterable (a set, a generator) is returned
            as the list it was read into.
        spec : JoinSpec
        only_if_null : bool
            Skip roots whose relation property is already filled (not
            ``None`` and not an empty collection).
        root_descriptor : EntityDescriptor, optional
            Descriptor of the roots; looked up from the engine's registry
            when omitted.
        tx : TransactionContext, optional
            Transaction the secondary queries run in.

        Raises
        ------
        JoinConfigurationError
            Before any query, when a target type is unknown or the keys
            do not match the descriptors.
        """
        result, items, root_descriptor, related_dao, through_dao = self._prepare(roots, spec, root_descriptor)
        pending = [r for r in items if not (only_if_null and _is_filled(getattr(r, spec.root_property, None)))]
        if not pending:
            return result

        keys_by_root = [tuple(root_descriptor.value_of(r, p) for p in spec.root_key_properties) for r in pending]
        distinct_keys = list(dict.fromkeys(k for k in keys_by_root if None not in k))
        if through_dao is None:
            matches = self._related(spec, related_dao, distinct_keys, tx)
        else:
            links = self._links(spec, through_dao, distinct_keys, tx)
            linked = list(dict.fromkeys(k for keys in links.values() for k in keys))
            by_key = self._related(spec, related_dao, linked, tx)
            position = {key: i for i, key in enumerate(by_key)}
            matches = {}
            for root_key, related_keys in links.items():
                ordered = sorted((k for k in set(related_keys) if k in position), key=position.__getitem__)
                matches[root_key] = [e for k in ordered for e in by_key[k]]
        logger.debug(
            "Loaded join '%s' for %d root(s) with %d key(s)", spec.root_property, len(pending), len(distinct_keys)
        )

        for root, key in zip(pending, keys_by_root):
            found = matches.get(key, [])
            if spec.cardinality is Cardinality.ONE:
                value = found[0] if found else None
            elif spec.cardinality is Cardinality.MANY_SET:
                value = set(found)
            else:
                value = list(found)
            setattr(root, spec.root_property, value)
        return result

    def load_all(
        self,
        roots: Union[Any, Iterable[Any]],
        specs: Iterable[JoinSpec],
        only_if_null: bool = False,
        root_descriptor: Optional[EntityDescriptor] = None,
        tx: Optional["TransactionContext"] = None,
    ) -> Union[Any, Sequence[Any]]:
        """Load several relations; one secondary query (per key chunk) per spec."""
        result, items = self._roots(roots)
        for spec in specs:
            self.load(items, spec, only_if_null=only_if_null, root_descriptor=root_descriptor, tx=tx)
        return result

    def delete(
        self,
        roots: Union[Any, Iterable[Any]],
        spec: JoinSpec,
        root_descriptor: Optional[EntityDescriptor] = None,
        tx: Optional["TransactionContext"] = None,
    ) -> int:
        """
        Delete the related rows of ``roots``.

        A ``through`` join reads the links of the roots, deletes the middle
        rows and then the linked related rows. Returns the number of deleted
        rows.
        """
        _, items, root_descriptor, related_dao, through_dao = self._prepare(roots, spec, root_descriptor)
        keys = list(dict.fromkeys(
            k for k in (tuple(root_descriptor.value_of(r, p) for p in spec.root_key_properties) for r in items)
            if None not in k
        ))
        if not keys:
            return 0
        if through_dao is None:
            related_keys = keys
        else:
            links = self._links(spec, through_dao, keys, tx)
            related_keys = list(dict.fromkeys(k for linked in links.values() for k in linked))
        deleted = 0
        if through_dao is not None:
            for chunk in self._chunks(keys):
                deleted += through_dao.delete_by(_key_condition(spec.through_root_keys, chunk), tx=tx)
        for chunk in self._chunks(related_keys):
            deleted += related_dao.delete_by(_key_condition(spec.related_key_properties, chunk), tx=tx)
        logger.debug("Deleted %d row(s) joined as '%s' to %d root(s)", deleted, spec.root_property, len(items))
        return deleted
