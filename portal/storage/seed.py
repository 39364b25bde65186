"""Default RBAC catalogue loaded into an empty store."""

from __future__ import annotations

from typing import Dict, List, Tuple

from portal.storage.models import Module, Permission, PermissionLevel, Role, SubModule

ADMIN_PERMISSION = "ADMIN.Yetki.Yonet"
ADMIN_ROLE = "ADMIN"

MODULES: List[Module] = [
    Module(1, "IK", "İnsan Kaynakları", "Bordro ve izin işlemleri", "users", 1),
    Module(2, "BUTCE", "Bütçe Yönetimi", "Bütçe görüntüleme ve düzenleme", "wallet", 2),
    Module(3, "ADMIN", "Yönetim", "Rol ve yetki yönetimi", "settings", 99),
]

SUB_MODULES: List[SubModule] = [
    SubModule(1, 1, "IK.Bordro", "Bordro", display_order=1),
    SubModule(2, 1, "IK.Izin", "İzin", display_order=2),
    SubModule(3, 2, "BUTCE.Butce", "Bütçe", display_order=1),
    SubModule(4, 3, "ADMIN.Yetki", "Yetkilendirme", display_order=1),
]

PERMISSION_LEVELS: List[PermissionLevel] = [
    PermissionLevel(1, 1, "Kendi", "Kendi kayıtları"),
    PermissionLevel(2, 2, "Tum", "Tüm kayıtlar"),
    PermissionLevel(3, 3, "Onay", "Onaylama"),
    PermissionLevel(4, 4, "Duzenle", "Düzenleme"),
]

PERMISSIONS: List[Permission] = [
    Permission(1, "IK.Bordro.KendiGoruntule", "Kendi bordrosunu görüntüle", 1, 1),
    Permission(2, "IK.Bordro.TumGoruntule", "Tüm bordroları görüntüle", 1, 2),
    Permission(3, "IK.Izin.KendiGoruntule", "Kendi izinlerini görüntüle", 2, 1),
    Permission(4, "IK.Izin.TumGoruntule", "Tüm izinleri görüntüle", 2, 2),
    Permission(5, "IK.Izin.Onayla", "İzin onayla", 2, 3),
    Permission(6, "BUTCE.Kendi.Goruntule", "Kendi bütçesini görüntüle", 3, 1),
    Permission(7, "BUTCE.Tum.Goruntule", "Tüm bütçeleri görüntüle", 3, 2),
    Permission(8, "BUTCE.Duzenle", "Bütçe düzenle", 3, 4),
    Permission(9, ADMIN_PERMISSION, "Rol ve yetkileri yönet", 4, 4),
]

ROLES: List[Role] = [
    Role(1, "CALISAN", "Çalışan", "Temel çalışan yetkileri"),
    Role(2, "IK_YONETICI", "İK Yöneticisi", "İnsan kaynakları yönetimi"),
    Role(3, "BUTCE_YONETICI", "Bütçe Yöneticisi", "Bütçe yönetimi"),
    Role(4, ADMIN_ROLE, "Sistem Yöneticisi", "Tüm yetkiler"),
]

ROLE_PERMISSIONS: Dict[int, Tuple[int, ...]] = {
    1: (1, 3, 6),
    2: (1, 2, 3, 4, 5, 6),
    3: (1, 3, 6, 7, 8),
    4: tuple(p.id for p in PERMISSIONS),
}
