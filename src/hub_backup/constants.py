# API coordinates of the hub's desired-state resources.
API_GROUP = "cluster.open-cluster-management.io"
API_VERSION = "v1beta1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"
BACKUP_SCHEDULE_KIND = "BackupSchedule"
BACKUP_SCHEDULE_PLURAL = "backupschedules"
RESTORE_KIND = "Restore"
RESTORE_PLURAL = "restores"

MANAGED_CLUSTER_GROUP = "cluster.open-cluster-management.io"
MANAGED_CLUSTER_VERSION = "v1"
MANAGED_CLUSTER_PLURAL = "managedclusters"

HIVE_GROUP = "hive.openshift.io"
HIVE_VERSION = "v1"

# Bare metal hosts in this namespace belong to the hub itself.
MACHINE_API_NAMESPACE = "openshift-machine-api"

# Backup engine (Velero) coordinates.
VELERO_GROUP = "velero.io"
VELERO_VERSION = "v1"
VELERO_GROUP_VERSION = f"{VELERO_GROUP}/{VELERO_VERSION}"
VELERO_SCHEDULE_PLURAL = "schedules"
VELERO_RESTORE_PLURAL = "restores"
VELERO_BACKUP_PLURAL = "backups"
VELERO_DELETE_BACKUP_REQUEST_PLURAL = "deletebackuprequests"

# Labels
BACKUP_CLUSTER_LABEL = "cluster.open-cluster-management.io/backup-cluster"
BACKUP_LABEL = "cluster.open-cluster-management.io/backup"
SCHEDULE_NAME_LABEL = "velero.io/schedule-name"
RESTORE_NAME_LABEL = "velero.io/restore-name"
EXCLUDE_FROM_BACKUP_LABEL = "velero.io/exclude-from-backup"
MSA_LABEL = "authentication.open-cluster-management.io/is-managed-serviceaccount"
AGENT_INSTALL_LABEL = "agent-install.openshift.io/watch"
BAREMETAL_LABEL = "environment.metal3.io"
DISABLE_CREATION_WEBHOOK_LABEL = "hive.openshift.io/disable-creation-webhook-for-dr"

# Engine phases
SCHEDULE_PHASE_NEW = "New"
SCHEDULE_PHASE_ENABLED = "Enabled"
SCHEDULE_PHASE_FAILED_VALIDATION = "FailedValidation"

BACKUP_PHASE_DELETING = "Deleting"

RESTORE_PHASE_NEW = "New"
RESTORE_PHASE_IN_PROGRESS = "InProgress"
RESTORE_PHASE_COMPLETED = "Completed"
RESTORE_PHASE_FAILED = "Failed"
RESTORE_PHASE_PARTIALLY_FAILED = "PartiallyFailed"
RESTORE_PHASE_FAILED_VALIDATION = "FailedValidation"

# Backup selection sentinels
LATEST_BACKUP = "latest"
SKIP_RESTORE = "skip"

# Cluster reactivation
AUTO_IMPORT_SECRET_NAME = "auto-import"
BOOTSTRAP_SECRET_NAME = "auto-import-secret"
AUTO_IMPORT_RETRY = "5"
TOKEN_KEY = "token"
LAST_REFRESH_ANNOTATION = "lastRefreshTimestamp"
EXPIRATION_ANNOTATION = "expirationTimestamp"
CLUSTER_AVAILABLE_CONDITION = "ManagedClusterConditionAvailable"

# Restore conditions
CONDITION_RESTORE_STARTED = "RestoreStarted"
CONDITION_RESTORE_COMPLETE = "RestoreComplete"
CONDITION_SYNC_VALIDATION = "SyncValidationFailed"
REASON_STARTED = "Started"
REASON_RUNNING = "Running"
REASON_FINISHED = "Finished"
REASON_FAILED_VALIDATION = "FailedValidation"

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"
