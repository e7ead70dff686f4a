"""Read-only lookups over the reference views (campos, cuarteles, jirones,
empleados, equipos and transportistas)."""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import String
from sqlalchemy.orm import Session

from .database import (
    SessionLocal,
    VistaCampo,
    VistaCuartel,
    VistaEmpleado,
    VistaEquipo,
    VistaJiron,
    VistaTransportista,
)
from .errors import InvalidInputError
from .pagination import Paged, paginate
from .services import _handle_service_error

logger = logging.getLogger(__name__)

CAMPO_MAX_LENGTH = 6
DESCRIPTION_MAX_LENGTH = 70


def as_dict(row: Any) -> Dict[str, Any]:
    """Column values of a view row; NULL text columns become empty strings."""
    result = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if value is None and isinstance(column.type, String):
            value = ""
        result[column.key] = value
    return result


def _page_of_dicts(page: Paged) -> Paged:
    page.data = [as_dict(row) for row in page.data]
    return page


def lookup_key(value: Optional[str], label: str, max_length: Optional[int] = None, upper: bool = False) -> str:
    key = (value or "").strip()
    if not key:
        raise InvalidInputError(f"{label} must not be empty")
    if max_length is not None and len(key) > max_length:
        raise InvalidInputError(f"{label} must not exceed {max_length} characters")
    return key.upper() if upper else key


def _list(query_fn, page: int, page_size: int, all_records: bool) -> Paged:
    session: Session = SessionLocal()
    try:
        return _page_of_dicts(paginate(query_fn(session), page, page_size, all_records))
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def _first(query_fn) -> Optional[Dict[str, Any]]:
    session: Session = SessionLocal()
    try:
        row = query_fn(session).first()
        return as_dict(row) if row is not None else None
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def _all(query_fn) -> List[Dict[str, Any]]:
    session: Session = SessionLocal()
    try:
        return [as_dict(row) for row in query_fn(session).all()]
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


# Campos


def list_campos(page: int = 1, page_size: int = 50, all_records: bool = False) -> Paged:
    return _list(lambda s: s.query(VistaCampo).order_by(VistaCampo.campo), page, page_size, all_records)


def get_campo(campo: str) -> Optional[Dict[str, Any]]:
    code = lookup_key(campo, "Campo code", CAMPO_MAX_LENGTH, upper=True)
    logger.info("looking up campo %s", code)
    return _first(lambda s: s.query(VistaCampo).filter(VistaCampo.campo == code))


def search_campos(description: str) -> List[Dict[str, Any]]:
    """Campos whose description contains ``description`` (upper-cased)."""
    text = lookup_key(description, "Description", DESCRIPTION_MAX_LENGTH, upper=True)
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{escaped}%"
    return _all(
        lambda s: s.query(VistaCampo)
        .filter(VistaCampo.desc_campo.like(pattern, escape="\\"))
        .order_by(VistaCampo.campo)
    )


def campo_exists(campo: str) -> bool:
    return get_campo(campo) is not None


# Cuarteles


def list_cuarteles(page: int = 1, page_size: int = 50, all_records: bool = False) -> Paged:
    return _list(
        lambda s: s.query(VistaCuartel).order_by(VistaCuartel.campo, VistaCuartel.jiron, VistaCuartel.cuartel),
        page,
        page_size,
        all_records,
    )


def get_cuartel(cuartel: str) -> Optional[Dict[str, Any]]:
    key = lookup_key(cuartel, "Cuartel")
    return _first(lambda s: s.query(VistaCuartel).filter(VistaCuartel.cuartel == key))


def list_cuarteles_by_campo(campo: str, page: int = 1, page_size: int = 50, all_records: bool = False) -> Paged:
    code = lookup_key(campo, "Campo code", CAMPO_MAX_LENGTH, upper=True)
    return _list(
        lambda s: s.query(VistaCuartel)
        .filter(VistaCuartel.campo == code)
        .order_by(VistaCuartel.jiron, VistaCuartel.cuartel),
        page,
        page_size,
        all_records,
    )


# Jirones


def list_jirones(page: int = 1, page_size: int = 50, all_records: bool = False) -> Paged:
    return _list(
        lambda s: s.query(VistaJiron).order_by(VistaJiron.campo, VistaJiron.jiron), page, page_size, all_records
    )


def get_jiron(jiron: str) -> Optional[Dict[str, Any]]:
    key = lookup_key(jiron, "Jiron")
    return _first(lambda s: s.query(VistaJiron).filter(VistaJiron.jiron == key))


def list_jirones_by_campo(campo: str, page: int = 1, page_size: int = 50, all_records: bool = False) -> Paged:
    code = lookup_key(campo, "Campo code", CAMPO_MAX_LENGTH, upper=True)
    return _list(
        lambda s: s.query(VistaJiron).filter(VistaJiron.campo == code).order_by(VistaJiron.jiron),
        page,
        page_size,
        all_records,
    )


# Empleados


def list_empleados(page: int = 1, page_size: int = 50, all_records: bool = False) -> Paged:
    return _list(
        lambda s: s.query(VistaEmpleado).order_by(VistaEmpleado.empleado, VistaEmpleado.codigo),
        page,
        page_size,
        all_records,
    )


def get_empleado_by_dni(dni: str) -> Optional[Dict[str, Any]]:
    key = lookup_key(dni, "DNI")
    return _first(lambda s: s.query(VistaEmpleado).filter(VistaEmpleado.dni == key))


def get_empleado_by_name(empleado: str) -> Optional[Dict[str, Any]]:
    key = lookup_key(empleado, "Employee name")
    return _first(lambda s: s.query(VistaEmpleado).filter(VistaEmpleado.empleado == key))


def get_empleado_by_codigo(codigo: int) -> Optional[Dict[str, Any]]:
    return _first(lambda s: s.query(VistaEmpleado).filter(VistaEmpleado.codigo == codigo))


def empleado_exists(codigo: str) -> bool:
    key = lookup_key(codigo, "Code")
    try:
        number = int(key)
    except ValueError:
        raise InvalidInputError("Code must be numeric")
    return get_empleado_by_codigo(number) is not None


# Equipos


def list_equipos(page: int = 1, page_size: int = 50, all_records: bool = False) -> Paged:
    return _list(lambda s: s.query(VistaEquipo).order_by(VistaEquipo.cod_equipo), page, page_size, all_records)


def get_equipo(cod_equipo: int) -> Optional[Dict[str, Any]]:
    return _first(lambda s: s.query(VistaEquipo).filter(VistaEquipo.cod_equipo == cod_equipo))


def get_equipo_by_placa(placa: str) -> Optional[Dict[str, Any]]:
    key = lookup_key(placa, "Plate", upper=True)
    return _first(lambda s: s.query(VistaEquipo).filter(VistaEquipo.placa == key))


def list_equipos_by_transportista(cod_transp: int) -> List[Dict[str, Any]]:
    return _all(
        lambda s: s.query(VistaEquipo).filter(VistaEquipo.cod_transp == cod_transp).order_by(VistaEquipo.cod_equipo)
    )


# Transportistas


def list_transportistas(page: int = 1, page_size: int = 50, all_records: bool = False) -> Paged:
    return _list(
        lambda s: s.query(VistaTransportista).order_by(VistaTransportista.transportista, VistaTransportista.cod_transp),
        page,
        page_size,
        all_records,
    )


def get_transportista(cod_transp: int) -> Optional[Dict[str, Any]]:
    return _first(lambda s: s.query(VistaTransportista).filter(VistaTransportista.cod_transp == cod_transp))


def get_transportista_by_ruc(ruc: str) -> Optional[Dict[str, Any]]:
    key = lookup_key(ruc, "RUC")
    return _first(lambda s: s.query(VistaTransportista).filter(VistaTransportista.ruc == key))
