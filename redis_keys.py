REDIS_ROOM_KEY = "room:meta:{room_id}" # room document hash
REDIS_ROOM_PAIR_KEY = "room:pair:{first}:{second}" # canonical participant pair -> room id
REDIS_USER_ROOMS_KEY = "user:rooms:{username}" # sorted set of room ids scored by updated_at
REDIS_EXPIRY_INDEX_KEY = "room:expiry" # sorted set of room ids scored by last message deadline
REDIS_USER_KEY = "user:{user_id}" # user document hash
REDIS_USERNAME_KEY = "user:username:{username}" # username -> user id
REDIS_EMAIL_KEY = "user:email:{email}" # email -> user id

# **Example `room:meta:{id}` hash fields**
# - `id` = `{roomId}`
# - `participants` = json list of usernames, fixed at creation
# - `last_message` = json `{text, sender, timestamp}` (absent when cleared)
# - `message_expiry_time` = integer seconds
# - `is_active` = json bool
# - `created_at` / `updated_at` = ISO timestamps
