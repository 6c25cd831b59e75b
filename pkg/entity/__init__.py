# Entity sync core: task storage, local/cloud routing, activity feed, live updates
#
# Components:
#   schema.py    - Data model (Task, Activity, TaskColumn, ActivityType, SyncMode)
#   config.py    - YAML + environment configuration
#   store.py     - SQLite persistence for tasks and activities
#   local.py     - Local task adapter over the store
#   cloud.py     - Cloud task adapter over HTTP
#   sync.py      - Mode resolution and the task sync facade
#   activity.py  - Activity log and activity derivation for mutations
#   broadcast.py - Viewer registry and Server-Sent Events fan-out
#   client.py    - Task board client with optimistic moves
